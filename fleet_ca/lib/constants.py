"""Record value keys and annotation names shared by CA and dependent records."""

CA_KEY = "ca.key"
CA_CRT = "ca.crt"
CA_STORE = "ca.p12"
CA_STORE_PASSWORD = "ca.password"

# Key name used by records written before the ca.key convention
LEGACY_CLUSTER_CA_KEY = "cluster-ca.key"

KEY_SUFFIX = ".key"
CRT_SUFFIX = ".crt"
STORE_SUFFIX = ".p12"
PASSWORD_SUFFIX = ".password"

ANNOTATION_DOMAIN = "certs.fleet.io/"
ANNO_FORCE_RENEW = ANNOTATION_DOMAIN + "force-renew"
ANNO_FORCE_REPLACE = ANNOTATION_DOMAIN + "force-replace"
ANNO_CA_CERT_GENERATION = ANNOTATION_DOMAIN + "ca-cert-generation"
ANNO_CA_KEY_GENERATION = ANNOTATION_DOMAIN + "ca-key-generation"
ANNO_CLUSTER_CA_CERT_GENERATION = ANNOTATION_DOMAIN + "cluster-ca-cert-generation"
ANNO_CLIENTS_CA_CERT_GENERATION = ANNOTATION_DOMAIN + "clients-ca-cert-generation"

INIT_GENERATION = 0
