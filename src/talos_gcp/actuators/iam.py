import contextlib

from google.api_core import exceptions
from google.cloud import iam_admin_v1
from google.iam.v1 import iam_policy_pb2
from google.protobuf import field_mask_pb2

from ..clients import get_iam_client, get_projects_client
from ..core import encode_description
from ..logger import logger
from ..schemas.iam import ServiceAccountSpec


def _apply_bindings(policy, member: str, add: list[str], remove: list[str]) -> bool:
    """Edits a google.iam.v1 Policy in place. Returns True if it changed."""
    changed = False
    for role in add:
        binding = next((b for b in policy.bindings if b.role == role), None)
        if binding is None:
            policy.bindings.add(role=role, members=[member])
            changed = True
        elif member not in binding.members:
            binding.members.append(member)
            changed = True
    for role in remove:
        for binding in policy.bindings:
            if binding.role == role and member in binding.members:
                binding.members.remove(member)
                changed = True
    # Drop bindings left without members
    for i in reversed(range(len(policy.bindings))):
        if not policy.bindings[i].members:
            del policy.bindings[i]
    return changed


def modify_project_bindings(
    project_id: str, member: str, add: list[str] | None = None, remove: list[str] | None = None
) -> None:
    """
    Read-modify-write of the project IAM policy. A concurrent writer makes
    set_iam_policy fail with Aborted (etag mismatch), which is retried.
    """
    client = get_projects_client()
    resource = f"projects/{project_id}"
    policy = client.get_iam_policy(request=iam_policy_pb2.GetIamPolicyRequest(resource=resource))
    if _apply_bindings(policy, member, add or [], remove or []):
        client.set_iam_policy(
            request=iam_policy_pb2.SetIamPolicyRequest(resource=resource, policy=policy)
        )


def modify_service_account_bindings(
    project_id: str, email: str, member: str, add: list[str]
) -> None:
    client = get_iam_client()
    resource = f"projects/{project_id}/serviceAccounts/{email}"
    policy = client.get_iam_policy(request={"resource": resource})
    if _apply_bindings(policy, member, add, []):
        client.set_iam_policy(request={"resource": resource, "policy": policy})


def create_service_account(project_id: str, spec: ServiceAccountSpec, timeout: int) -> None:
    request = iam_admin_v1.CreateServiceAccountRequest(
        name=f"projects/{project_id}",
        account_id=spec.name,
        service_account=iam_admin_v1.ServiceAccount(
            display_name=spec.display_name,
            description=encode_description(spec.labels),
        ),
    )
    get_iam_client().create_service_account(request=request, timeout=timeout)
    modify_project_bindings(project_id, f"serviceAccount:{spec.email}", add=spec.roles)


def update_service_account(
    project_id: str, desired: ServiceAccountSpec, actual: ServiceAccountSpec, timeout: int
) -> None:
    if desired.display_name != actual.display_name:
        request = iam_admin_v1.PatchServiceAccountRequest(
            service_account=iam_admin_v1.ServiceAccount(
                name=f"projects/{project_id}/serviceAccounts/{desired.email}",
                display_name=desired.display_name,
            ),
            update_mask=field_mask_pb2.FieldMask(paths=["display_name"]),
        )
        get_iam_client().patch_service_account(request=request, timeout=timeout)

    if desired.roles != actual.roles:
        modify_project_bindings(
            project_id,
            f"serviceAccount:{desired.email}",
            add=sorted(set(desired.roles) - set(actual.roles)),
            remove=sorted(set(actual.roles) - set(desired.roles)),
        )


def delete_service_account(project_id: str, spec: ServiceAccountSpec, timeout: int) -> None:
    if spec.roles:
        modify_project_bindings(project_id, f"serviceAccount:{spec.email}", remove=spec.roles)
    request = iam_admin_v1.DeleteServiceAccountRequest(
        name=f"projects/{project_id}/serviceAccounts/{spec.email}"
    )
    with contextlib.suppress(exceptions.NotFound):
        get_iam_client().delete_service_account(request=request, timeout=timeout)
    logger.debug(f"Service account {spec.email} removed")
