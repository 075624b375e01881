"""Accessors for the services hung on app.state by create_app()."""

from fastapi import Request

from ..catalog import CatalogClient
from ..jobs import JobRegistry
from ..sessions import SessionStore
from ..storage import RemoteStorageClient


def get_sessions(request: Request) -> SessionStore:
    return request.app.state.sessions


def get_storage(request: Request) -> RemoteStorageClient:
    return request.app.state.storage


def get_catalog(request: Request) -> CatalogClient:
    return request.app.state.catalog


def get_jobs(request: Request) -> JobRegistry:
    return request.app.state.jobs
