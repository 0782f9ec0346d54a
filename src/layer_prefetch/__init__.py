# Make src/layer_prefetch a Python package
from .cache_store import CacheHandle, CacheStore
from .config import PrefetchConfig, load_config
from .coordinator import NodeCoordinator
from .errors import (
    AlreadyInProgress,
    AuthFailure,
    BudgetExceeded,
    Canceled,
    DigestMismatch,
    InsufficientCacheSpace,
    InvalidReference,
    NotFound,
    PrefetchError,
    RegistryTimeout,
    RegistryUnavailable,
    RetriesExhausted,
    TaskTimeout,
)
from .fetcher import LayerFetcherPool
from .image_refs import ImageReference, parse_image_ref
from .manifest_resolver import ManifestResolver
from .metrics import PrefetchMetrics
from .registry import MirrorRegistryClient, RegistryBackend, RegistryClient
from .scheduler import CampaignHandle, CampaignStatus, ClusterPrefetchScheduler
from .types import JobState, LayerDescriptor, PullJob, PullJobStatus

__all__ = [
    "CacheStore",
    "CacheHandle",
    "LayerFetcherPool",
    "ManifestResolver",
    "NodeCoordinator",
    "ClusterPrefetchScheduler",
    "CampaignHandle",
    "CampaignStatus",
    "RegistryBackend",
    "RegistryClient",
    "MirrorRegistryClient",
    "ImageReference",
    "parse_image_ref",
    "LayerDescriptor",
    "PullJob",
    "PullJobStatus",
    "JobState",
    "PrefetchConfig",
    "load_config",
    "PrefetchMetrics",
    "PrefetchError",
    "InvalidReference",
    "NotFound",
    "AuthFailure",
    "RegistryUnavailable",
    "RegistryTimeout",
    "DigestMismatch",
    "AlreadyInProgress",
    "BudgetExceeded",
    "InsufficientCacheSpace",
    "RetriesExhausted",
    "TaskTimeout",
    "Canceled",
]
