"""Shared FastAPI dependency functions and the service container."""

from dataclasses import dataclass
from typing import Optional

import httpx
from fastapi import Request

from rowbridge.core.config import Settings, settings as default_settings
from rowbridge.core.datastore import DatastoreClient
from rowbridge.core.session import SessionManager, session_manager
from rowbridge.core.tokens import CredentialManager
from rowbridge.services.file_store import FileSessionStore, LocalFileCache, TempContentCache
from rowbridge.services.importer import BatchImportEngine
from rowbridge.services.job_tracker import ImportJobTracker
from rowbridge.services.pipeline import ImportPipeline
from rowbridge.services.provisioner import SchemaProvisioner
from rowbridge.services.recovery import ContentRecoveryManager
from rowbridge.services.uploads import UploadService
from rowbridge.services.verification import VerificationStep


@dataclass
class Services:
    """Everything a request handler needs, built once per application."""

    config: Settings
    client: DatastoreClient
    credentials: CredentialManager
    sessions: SessionManager
    memory_cache: TempContentCache
    local_cache: LocalFileCache
    store: FileSessionStore
    uploads: UploadService
    pipeline: ImportPipeline
    jobs: ImportJobTracker

    async def aclose(self) -> None:
        await self.jobs.shutdown()
        await self.client.aclose()


def build_services(
    config: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    sessions: Optional[SessionManager] = None,
) -> Services:
    """Wire the service graph. ``transport`` lets tests stand in for the datastore."""
    config = config or default_settings
    sessions = sessions or session_manager
    client = DatastoreClient(config, transport=transport)
    credentials = CredentialManager(
        client.authenticate,
        config.datastore_username,
        config.datastore_password,
        ttl=config.token_ttl_seconds,
        buffer=config.token_refresh_buffer_seconds,
        min_refresh_interval=config.token_min_refresh_interval,
    )
    memory_cache = TempContentCache()
    local_cache = LocalFileCache(config.local_cache_dir, config.local_cache_max_age_seconds)
    store = FileSessionStore(sessions, memory_cache, local_cache)
    uploads = UploadService(client, credentials, store, config)
    pipeline = ImportPipeline(
        client=client,
        credentials=credentials,
        store=store,
        uploads=uploads,
        recovery=ContentRecoveryManager(client, credentials, memory_cache, local_cache, config),
        provisioner=SchemaProvisioner(client, credentials),
        engine=BatchImportEngine(client, credentials, config),
        verification=VerificationStep(client, credentials, config),
        config=config,
    )
    return Services(
        config=config,
        client=client,
        credentials=credentials,
        sessions=sessions,
        memory_cache=memory_cache,
        local_cache=local_cache,
        store=store,
        uploads=uploads,
        pipeline=pipeline,
        jobs=ImportJobTracker(config.max_import_jobs),
    )


def get_services(request: Request) -> Services:
    """Return the application's :class:`Services`."""
    return request.app.state.services
