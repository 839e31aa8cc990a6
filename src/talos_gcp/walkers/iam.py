from google.cloud import iam_admin_v1
from google.iam.v1 import iam_policy_pb2
from tenacity import retry

from ..clients import get_iam_client, get_projects_client
from ..core import RETRY_CONFIG, decode_description
from ..schemas.iam import PolicyBinding, ServiceAccountSpec


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def get_project_policy(project_id: str) -> list[PolicyBinding]:
    """Project-level IAM bindings."""
    rm_client = get_projects_client()
    request = iam_policy_pb2.GetIamPolicyRequest(resource=f"projects/{project_id}")
    policy = rm_client.get_iam_policy(request=request)
    return [PolicyBinding(role=b.role, members=list(b.members)) for b in policy.bindings]


def roles_by_member(bindings: list[PolicyBinding]) -> dict[str, list[str]]:
    roles: dict[str, list[str]] = {}
    for binding in bindings:
        for member in binding.members:
            roles.setdefault(member, []).append(binding.role)
    return roles


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def list_service_accounts(project_id: str) -> list[ServiceAccountSpec]:
    """
    Service accounts with the project roles bound to each. Ownership labels
    are stored in the account description.
    """
    iam_client = get_iam_client()
    request = iam_admin_v1.ListServiceAccountsRequest(name=f"projects/{project_id}")
    accounts = list(iam_client.list_service_accounts(request=request))

    member_roles = roles_by_member(get_project_policy(project_id))
    specs = []
    for sa in accounts:
        specs.append(
            ServiceAccountSpec(
                name=sa.email.split("@")[0],
                labels=decode_description(sa.description),
                project_id=project_id,
                display_name=sa.display_name,
                roles=sorted(member_roles.get(f"serviceAccount:{sa.email}", [])),
            )
        )
    return specs
