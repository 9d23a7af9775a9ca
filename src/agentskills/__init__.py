from ._version import __version__
from .client import GatewayBundleStore, RegistryHTTP, RegistryMetadataClient, SkillMetadata, StaticMetadataClient
from .config import Config, load_config
from .errors import (
    AlreadyInstalled,
    BundleCorrupt,
    BundleNotFound,
    CircularDependencyError,
    ConfigurationError,
    DependencyDepthExceeded,
    DependencyError,
    DependencyNotFound,
    ExtractionError,
    LockFileError,
    NetworkError,
    SkillsError,
)
from .fetcher import BundleFetcher
from .graph import DependencyGraph, GraphBuilder
from .installer import BundleInstaller
from .lockfile import InstalledSkillRecord, LockFile, LockFileStore
from .orchestrator import InstallOptions, InstallOrchestrator, InstallResult, InstallState
from .planner import InstallPlan, InstallPlanner

__all__ = [
    "AlreadyInstalled",
    "BundleCorrupt",
    "BundleFetcher",
    "BundleInstaller",
    "BundleNotFound",
    "CircularDependencyError",
    "Config",
    "ConfigurationError",
    "DependencyDepthExceeded",
    "DependencyError",
    "DependencyGraph",
    "DependencyNotFound",
    "ExtractionError",
    "GatewayBundleStore",
    "GraphBuilder",
    "InstallOptions",
    "InstallOrchestrator",
    "InstallPlan",
    "InstallPlanner",
    "InstallResult",
    "InstallState",
    "InstalledSkillRecord",
    "LockFile",
    "LockFileError",
    "LockFileStore",
    "NetworkError",
    "RegistryHTTP",
    "RegistryMetadataClient",
    "SkillMetadata",
    "SkillsError",
    "StaticMetadataClient",
    "__version__",
    "load_config",
]
