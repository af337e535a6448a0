from .cloud_storage import CloudStorage, build_storage_client, new_cloud_storage

__all__ = [
    "CloudStorage",
    "build_storage_client",
    "new_cloud_storage",
]
