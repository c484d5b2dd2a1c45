"""Reconciliation engine: dispatch, port lifecycle and floating IP handling."""

from .manager import NeutronController

__all__ = ["NeutronController"]
