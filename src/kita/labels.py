"""Label and annotation keys shared by the controller and its resources."""

NAMESPACE = "acme.itzg.github.io"

ROLE_LABEL = f"{NAMESPACE}/role"
ISSUER_LABEL = f"{NAMESPACE}/issuer"
FOR_INGRESS_LABEL = f"{NAMESPACE}/for-ingress"

HOST_ANNOTATION = f"{NAMESPACE}/host"

# Port picked on the responder service when it exposes more than one
SOLVER_SERVICE_PORT_NAME = "http"

TLS_SECRET_TYPE = "kubernetes.io/tls"
TLS_CERT_KEY = "tls.crt"
TLS_PRIVATE_KEY_KEY = "tls.key"


def ingress_selector(solver_role: str) -> str:
    """Selector for application Ingresses, excluding temporary solver ones."""
    return f"{ISSUER_LABEL},{ROLE_LABEL} notin ({solver_role})"


def secret_selector() -> str:
    """Selector for TLS secrets managed by the controller."""
    return ISSUER_LABEL


def solver_service_selector(solver_role: str) -> str:
    """Selector for the shared challenge responder service."""
    return f"{ROLE_LABEL}={solver_role}"
