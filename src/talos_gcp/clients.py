from __future__ import annotations

from functools import lru_cache
from typing import Any

from google.cloud import compute_v1, iam_admin_v1, resourcemanager_v3
from google.cloud import storage  # type: ignore # noqa: I001

# Shared Client Registry (Lazy-loaded and cached)


@lru_cache(maxsize=1)
def get_instances_client() -> Any:
    return compute_v1.InstancesClient()


@lru_cache(maxsize=1)
def get_images_client() -> Any:
    return compute_v1.ImagesClient()


@lru_cache(maxsize=1)
def get_instance_groups_client() -> Any:
    return compute_v1.InstanceGroupsClient()


@lru_cache(maxsize=1)
def get_firewalls_client() -> Any:
    return compute_v1.FirewallsClient()


@lru_cache(maxsize=1)
def get_networks_client() -> Any:
    return compute_v1.NetworksClient()


@lru_cache(maxsize=1)
def get_subnetworks_client() -> Any:
    return compute_v1.SubnetworksClient()


@lru_cache(maxsize=1)
def get_routers_client() -> Any:
    return compute_v1.RoutersClient()


@lru_cache(maxsize=1)
def get_addresses_client() -> Any:
    return compute_v1.AddressesClient()


@lru_cache(maxsize=1)
def get_health_checks_client() -> Any:
    return compute_v1.RegionHealthChecksClient()


@lru_cache(maxsize=1)
def get_backend_services_client() -> Any:
    return compute_v1.RegionBackendServicesClient()


@lru_cache(maxsize=1)
def get_forwarding_rules_client() -> Any:
    return compute_v1.ForwardingRulesClient()


@lru_cache(maxsize=1)
def get_resource_policies_client() -> Any:
    return compute_v1.ResourcePoliciesClient()


@lru_cache(maxsize=1)
def get_projects_client() -> Any:
    return resourcemanager_v3.ProjectsClient()


@lru_cache(maxsize=1)
def get_iam_client() -> Any:
    return iam_admin_v1.IAMClient()


@lru_cache(maxsize=1)
def get_storage_client() -> Any:
    return storage.Client()
