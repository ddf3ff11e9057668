"""Providers wrapping the tools dbxctl drives on the managed host."""
from __future__ import annotations

from .docker import ContainerSpec, DockerProvider
from .docker_runtime import DockerReadiness, DockerRuntimeManager, DockerVersionInfo
from .mongodb import MongoProvider

__all__ = [
    "ContainerSpec",
    "DockerProvider",
    "DockerReadiness",
    "DockerRuntimeManager",
    "DockerVersionInfo",
    "MongoProvider",
]
