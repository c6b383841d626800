"""Providers for external collaborators: containers, registry, store, tests."""

from shipline.providers.base import (
    ArtifactRegistry,
    ContainerRuntime,
    HealthProbe,
    MigrationRunner,
    ProviderError,
    StoreBackup,
    TestExecutor,
)
from shipline.providers.docker import DockerRegistry, DockerRuntime
from shipline.providers.http import ServiceHealthProbe
from shipline.providers.junit import CommandTestExecutor
from shipline.providers.migrations import CommandMigrationRunner
from shipline.providers.store import CommandStoreBackup, DirectoryStoreBackup, store_from_spec

__all__ = [
    "ArtifactRegistry",
    "CommandMigrationRunner",
    "CommandStoreBackup",
    "CommandTestExecutor",
    "ContainerRuntime",
    "DirectoryStoreBackup",
    "DockerRegistry",
    "DockerRuntime",
    "HealthProbe",
    "MigrationRunner",
    "ProviderError",
    "ServiceHealthProbe",
    "StoreBackup",
    "TestExecutor",
    "store_from_spec",
]
