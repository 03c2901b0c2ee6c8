from .manifests import ManifestUpdate, ManifestUpdater, image_repository
from .sync import SyncResult, SyncWatcher

__all__ = ["ManifestUpdate", "ManifestUpdater", "image_repository", "SyncResult", "SyncWatcher"]
