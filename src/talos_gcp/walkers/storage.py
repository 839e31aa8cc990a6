from tenacity import retry

from ..clients import get_storage_client
from ..core import RETRY_CONFIG
from ..schemas.storage import BucketSpec


@retry(**RETRY_CONFIG)  # type: ignore[call-overload, untyped-decorator]
def list_buckets(project_id: str) -> list[BucketSpec]:
    client = get_storage_client()
    return [
        BucketSpec(
            name=b.name,
            labels=dict(b.labels or {}),
            location=b.location,
            storage_class=b.storage_class or "STANDARD",
            uniform_access=bool(b.iam_configuration.uniform_bucket_level_access_enabled),
        )
        for b in client.list_buckets(project=project_id)
    ]
