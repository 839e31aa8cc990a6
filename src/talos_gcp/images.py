"""
Talos image pipeline.

For each image the compiled instances need: ask the Talos Image Factory
for a schematic covering the pool's system extensions, download the GCP
disk tarball, stage it in the cluster bucket and register it as a Compute
Engine image. Images are shared by name across clusters and are never
deleted by the reconciler.
"""

import tempfile
from pathlib import Path

import requests
from google.api_core import exceptions
from google.cloud import compute_v1

from .clients import get_images_client, get_storage_client
from .compiler import required_images
from .config import ClusterConfig, PoolConfig
from .core import TALOS_FACTORY_URL
from .errors import TransientProviderError
from .gcp import translate_errors
from .logger import logger

ARCHITECTURES = {"amd64": "X86_64", "arm64": "ARM64"}
DOWNLOAD_CHUNK = 8 * 1024 * 1024


class ImageBuilder:
    def __init__(self, config: ClusterConfig, session: requests.Session | None = None):
        self.config = config
        self.session = session or requests.Session()

    def image_exists(self, name: str) -> bool:
        with translate_errors("get image", "Image", name):
            try:
                get_images_client().get(project=self.config.project_id, image=name)
            except exceptions.NotFound:
                return False
        return True

    def schematic_id(self, extensions: tuple[str, ...]) -> str:
        payload = {
            "customization": {
                "systemExtensions": {"officialExtensions": sorted(extensions)},
            }
        }
        try:
            res = self.session.post(f"{TALOS_FACTORY_URL}/schematics", json=payload, timeout=30)
            res.raise_for_status()
        except requests.RequestException as e:
            raise TransientProviderError(f"Image Factory schematic request failed: {e}") from e
        return res.json()["id"]

    def factory_url(self, schematic: str, version: str) -> str:
        return f"{TALOS_FACTORY_URL}/image/{schematic}/{version}/gcp-{self.config.arch}.raw.tar.gz"

    def _download(self, url: str, dest: Path) -> None:
        logger.info(f"Downloading {url}")
        try:
            with self.session.get(url, stream=True, timeout=60) as res:
                res.raise_for_status()
                with dest.open("wb") as fh:
                    for chunk in res.iter_content(chunk_size=DOWNLOAD_CHUNK):
                        fh.write(chunk)
        except requests.RequestException as e:
            raise TransientProviderError(f"Image download failed: {e}", kind="Image") from e

    def stage(self, name: str, pool: PoolConfig) -> str:
        """Downloads the factory image and uploads it to the bucket. Returns the gs:// URI."""
        schematic = self.schematic_id(pool.extensions)
        blob_name = f"images/{name}.tar.gz"
        bucket = get_storage_client().bucket(self.config.bucket_name)
        blob = bucket.blob(blob_name)

        with translate_errors("stage image", "Image", name):
            if not blob.exists():
                with tempfile.TemporaryDirectory() as tmp:
                    local = Path(tmp) / f"{name}.tar.gz"
                    self._download(self.factory_url(schematic, pool.talos_version), local)
                    blob.upload_from_filename(str(local), timeout=self.config.operation_timeout)
        return f"gs://{self.config.bucket_name}/{blob_name}"

    def create_image(self, name: str, source_uri: str, pool: PoolConfig) -> None:
        image = compute_v1.Image(
            name=name,
            raw_disk=compute_v1.RawDisk(
                source=source_uri.replace("gs://", "https://storage.googleapis.com/", 1)
            ),
            architecture=ARCHITECTURES[self.config.arch],
            guest_os_features=[compute_v1.GuestOsFeature(type_="VIRTIO_SCSI_MULTIQUEUE")],
            labels={"talos-version": pool.talos_version.replace(".", "-")},
            description=f"Talos {pool.talos_version} ({', '.join(pool.extensions) or 'stock'})",
        )
        with translate_errors("create image", "Image", name):
            try:
                op = get_images_client().insert(project=self.config.project_id, image_resource=image)
                op.result(timeout=self.config.operation_timeout)
            except exceptions.Conflict:
                logger.info(f"Image {name} appeared concurrently; keeping it")

    def ensure_images(self) -> list[str]:
        """Builds every missing image. Returns the names that were created."""
        created = []
        for name, pool in required_images(self.config).items():
            if self.image_exists(name):
                logger.debug(f"Image {name} present")
                continue
            logger.info(f"Building image {name} for pool {pool.name}")
            uri = self.stage(name, pool)
            self.create_image(name, uri, pool)
            created.append(name)
        return created
