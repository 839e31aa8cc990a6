import re

from google.api_core import exceptions
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

from .errors import TransientProviderError

# API errors worth retrying: rate limits, 5xx, deadlines, aborted transactions
TRANSIENT_API_ERRORS = (
    exceptions.TooManyRequests,
    exceptions.ResourceExhausted,
    exceptions.InternalServerError,
    exceptions.ServiceUnavailable,
    exceptions.GatewayTimeout,
    exceptions.DeadlineExceeded,
    exceptions.Aborted,
)

# Shared retry configuration for read paths
# usage: @retry(**RETRY_CONFIG)
RETRY_CONFIG = {
    "stop": stop_after_attempt(3),
    "wait": wait_exponential(multiplier=1, min=4, max=10),
    "retry": retry_if_exception_type(TRANSIENT_API_ERRORS),
    "reraise": True,
}

# Per-action retry used by the reconciler; only transient errors are retried
ACTION_RETRY_CONFIG = {
    "stop": stop_after_attempt(5),
    "wait": wait_exponential(multiplier=1, min=2, max=30),
    "retry": retry_if_exception_type(TransientProviderError),
    "reraise": True,
}

# Ownership label carried by every resource of a cluster
CLUSTER_LABEL = "cluster"
MANAGED_BY = "talos-gcp"

MAX_CLUSTER_NAME_LENGTH = 20
NAME_PATTERN = re.compile(r"^[a-z]([-a-z0-9]*[a-z0-9])?$")

# Ranges GCP reserves for its own traffic; cluster CIDRs must stay clear
IAP_RANGE = "35.235.240.0/20"
HEALTH_CHECK_RANGES = ["35.191.0.0/16", "130.211.0.0/22"]
RESERVED_RANGES = {
    "IAP TCP forwarding": IAP_RANGE,
    "load balancer health checks (35.191)": "35.191.0.0/16",
    "load balancer health checks (130.211)": "130.211.0.0/22",
    "link-local / metadata": "169.254.0.0/16",
}

# Talos / Kubernetes ports exposed behind the control-plane load balancer
KUBE_API_PORT = 6443
TALOS_API_PORT = 50000
TRUSTD_PORT = 50001
CONTROL_PLANE_PORTS = [KUBE_API_PORT, TALOS_API_PORT, TRUSTD_PORT]

# Local tunnel ports written into the .local credentials
LOCAL_KUBE_PORT = 64430
LOCAL_TALOS_PORT = 50005

# Roles granted to the node service account
NODE_SERVICE_ACCOUNT_ROLES = [
    "roles/compute.loadBalancerAdmin",
    "roles/compute.viewer",
    "roles/compute.securityAdmin",
    "roles/compute.networkViewer",
    "roles/compute.storageAdmin",
    "roles/compute.instanceAdmin.v1",
    "roles/iam.serviceAccountUser",
]

# Roles granted to human operators by grant-admin
ADMIN_PROJECT_ROLES = [
    "roles/compute.osAdminLogin",
    "roles/iap.tunnelResourceAccessor",
]

TALOS_FACTORY_URL = "https://factory.talos.dev"

# Region prefix -> IANA timezone used for work-hour schedules
REGION_TIMEZONES = {
    "us-central": "America/Chicago",
    "us-east1": "America/New_York",
    "us-east4": "America/New_York",
    "us-east5": "America/New_York",
    "us-west1": "America/Los_Angeles",
    "us-west2": "America/Los_Angeles",
    "us-west3": "America/Denver",
    "us-west4": "America/Phoenix",
    "us-south1": "America/Chicago",
    "northamerica-northeast1": "America/Montreal",
    "northamerica-northeast2": "America/Toronto",
    "southamerica-east1": "America/Sao_Paulo",
    "southamerica-west1": "America/Santiago",
    "europe-west1": "Europe/Brussels",
    "europe-west2": "Europe/London",
    "europe-west3": "Europe/Berlin",
    "europe-west4": "Europe/Amsterdam",
    "europe-west6": "Europe/Zurich",
    "europe-west8": "Europe/Rome",
    "europe-west9": "Europe/Paris",
    "europe-north1": "Europe/Helsinki",
    "europe-central2": "Europe/Warsaw",
    "europe-southwest1": "Europe/Madrid",
    "asia-east1": "Asia/Taipei",
    "asia-east2": "Asia/Hong_Kong",
    "asia-northeast1": "Asia/Tokyo",
    "asia-northeast3": "Asia/Seoul",
    "asia-south1": "Asia/Kolkata",
    "asia-southeast1": "Asia/Singapore",
    "australia-southeast1": "Australia/Sydney",
}


def timezone_for_region(region: str) -> str:
    for prefix, tz in REGION_TIMEZONES.items():
        if region.startswith(prefix):
            return tz
    return "UTC"


def encode_description(labels: dict[str, str]) -> str:
    """
    Serializes ownership labels into a description string for resource types
    that have no native label support (networks, firewalls, routers, ...).
    """
    tokens = [f"managed-by={MANAGED_BY}"]
    tokens.extend(f"{k}={v}" for k, v in sorted(labels.items()))
    return " ".join(tokens)


def decode_description(description: str | None) -> dict[str, str]:
    """Inverse of encode_description. Unmanaged descriptions yield no labels."""
    if not description:
        return {}
    pairs = dict(
        token.split("=", 1) for token in description.split() if "=" in token
    )
    if pairs.pop("managed-by", None) != MANAGED_BY:
        return {}
    return pairs


def in_scope(labels: dict[str, str], cluster: str | None) -> bool:
    """
    True when a resource belongs to the label scope: one exact cluster, or
    (cluster=None) any cluster managed by this tool.
    """
    owner = labels.get(CLUSTER_LABEL)
    if not owner:
        return False
    return cluster is None or owner == cluster


def short_name(url: str | None) -> str:
    """projects/p/zones/z/instances/foo -> foo"""
    if not url:
        return ""
    return url.split("/")[-1]
