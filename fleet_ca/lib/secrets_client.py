"""Secrets Manager backed record store for CA and dependent credential records."""

import base64
import json
import logging

import boto3
from botocore.exceptions import ClientError
from mypy_boto3_secretsmanager import SecretsManagerClient as SecretsManagerClientType

from fleet_ca.lib.config import StoreConfig
from fleet_ca.lib.record_store import Record

logger = logging.getLogger(__name__)


def _error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def encode_record(record: Record) -> str:
    """Serialize a record to the SecretString JSON document."""
    return json.dumps(
        {
            "data": {
                key: base64.b64encode(value).decode("ascii")
                for key, value in sorted(record.data.items())
            },
            "annotations": dict(sorted(record.annotations.items())),
        }
    )


def decode_record(namespace: str, name: str, secret_string: str) -> Record:
    """Parse a SecretString JSON document back into a record.

    Raises:
        ValueError: If the document is not a JSON object of the expected shape
    """
    document = json.loads(secret_string)
    if not isinstance(document, dict):
        raise ValueError(f"secret for {namespace}/{name} is not a JSON object")
    data = {key: base64.b64decode(value) for key, value in document.get("data", {}).items()}
    annotations = {key: str(value) for key, value in document.get("annotations", {}).items()}
    return Record(namespace, name, data, annotations)


class SecretsManagerRecordStore:
    """Record store keeping one secret per record in AWS Secrets Manager."""

    def __init__(self, config: StoreConfig | None = None) -> None:
        """Initialize Secrets Manager client.

        Args:
            config: Region and secret name prefix, defaults to StoreConfig()
        """
        self.config = config or StoreConfig()
        self.client: SecretsManagerClientType = boto3.client(
            "secretsmanager", region_name=self.config.region
        )

    def secret_id(self, namespace: str, name: str) -> str:
        return f"{self.config.prefix}/{namespace}/{name}"

    def get(self, namespace: str, name: str) -> Record | None:
        """Fetch a record.

        Args:
            namespace: Record namespace
            name: Record name

        Returns:
            The record, or None if no secret exists for it

        Raises:
            ClientError: For any AWS error other than a missing secret
        """
        secret_id = self.secret_id(namespace, name)
        try:
            response = self.client.get_secret_value(SecretId=secret_id)
        except ClientError as e:
            if _error_code(e) == "ResourceNotFoundException":
                logger.debug("Secret %s does not exist", secret_id)
                return None
            raise
        return decode_record(namespace, name, response["SecretString"])

    def put(self, record: Record) -> None:
        """Write a record as a new secret version, creating the secret if needed.

        Args:
            record: Record to store

        Raises:
            ClientError: If the secret cannot be written
        """
        secret_id = self.secret_id(record.namespace, record.name)
        secret_string = encode_record(record)
        try:
            self.client.put_secret_value(SecretId=secret_id, SecretString=secret_string)
        except ClientError as e:
            if _error_code(e) != "ResourceNotFoundException":
                raise
            logger.info("Creating secret %s", secret_id)
            self.client.create_secret(
                Name=secret_id,
                Description=f"fleet-ca record {record.namespace}/{record.name}",
                SecretString=secret_string,
            )
            return
        logger.debug("Stored new version of secret %s", secret_id)
