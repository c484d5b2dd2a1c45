"""Kubernetes resource access and caches."""

from .informer import Informer
from .store import ResourceStore, load_api_client

__all__ = ["Informer", "ResourceStore", "load_api_client"]
