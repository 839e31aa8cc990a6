import contextlib

from google.api_core import exceptions

from ..clients import get_storage_client
from ..schemas.storage import BucketSpec


def create_bucket(project_id: str, spec: BucketSpec, timeout: int) -> None:
    client = get_storage_client()
    bucket = client.bucket(spec.name)
    bucket.storage_class = spec.storage_class
    bucket.labels = dict(spec.labels)
    bucket.iam_configuration.uniform_bucket_level_access_enabled = spec.uniform_access
    client.create_bucket(bucket, project=project_id, location=spec.location, timeout=timeout)


def update_bucket(project_id: str, desired: BucketSpec, actual: BucketSpec, timeout: int) -> None:
    bucket = get_storage_client().get_bucket(desired.name, timeout=timeout)
    bucket.labels = dict(desired.labels)
    bucket.patch(timeout=timeout)


def delete_bucket(project_id: str, spec: BucketSpec, timeout: int) -> None:
    """Deletes the bucket with its objects (secrets, staged images)."""
    bucket = get_storage_client().bucket(spec.name)
    with contextlib.suppress(exceptions.NotFound):
        bucket.delete(force=True, timeout=timeout)


def grant_bucket_role(bucket_name: str, member: str, role: str) -> bool:
    """Adds member to role on the bucket IAM policy. Returns True if it changed."""
    bucket = get_storage_client().bucket(bucket_name)
    policy = bucket.get_iam_policy(requested_policy_version=3)
    for binding in policy.bindings:
        if binding["role"] == role:
            if member in binding["members"]:
                return False
            binding["members"].add(member)
            break
    else:
        policy.bindings.append({"role": role, "members": {member}})
    bucket.set_iam_policy(policy)
    return True
