"""HTTP API for the regimen engine."""

from regimen.api.app import create_app

__all__ = ["create_app"]
