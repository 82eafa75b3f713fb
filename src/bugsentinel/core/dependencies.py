"""Dependency injection container for the application."""

import asyncio
import logging
from pathlib import Path
from typing import Optional

from bugsentinel.api.gemini_client import GeminiClient
from bugsentinel.api.supabase_gateway import SupabaseGateway
from bugsentinel.config.credential_resolver import CredentialResolver, Credentials
from bugsentinel.config.settings import Settings
from bugsentinel.core.connectivity import ConnectivityMonitor
from bugsentinel.core.state import AppStateStore
from bugsentinel.data.services.analysis_service import AnalysisService
from bugsentinel.data.services.auth_service import AuthService
from bugsentinel.data.services.preferences_service import PreferencesService
from bugsentinel.data.services.snippet_service import SnippetService
from bugsentinel.data.services.sync_engine import SyncEngine
from bugsentinel.data.storage.kv_backend import DuckDBKeyValueStore
from bugsentinel.data.storage.local_store import LocalStore
from bugsentinel.utils.logger_setup import setup_logging


class DependencyContainer:
    """Container for managing application dependencies.

    Components are built lazily and shared, so every service sees the same
    local store, state store and sync engine.
    """

    def __init__(
        self,
        db_path: Optional[Path] = None,
        profile: Optional[str] = None,
        credentials: Optional[Credentials] = None,
        logger_name: str = "bugsentinel",
        log_dir: Optional[Path] = None,
    ):
        if db_path is None:
            Settings.ensure_directories()
        self.db_path = Settings.get_db_path(db_path, profile)
        self.logger = setup_logging(logger_name, log_dir=log_dir)
        self.credentials = credentials or CredentialResolver.resolve(self.logger)

        self._kv_backend = None
        self._local_store = None
        self._state = None
        self._gateway = None
        self._ai_client = None
        self._monitor = None
        self._engine = None
        self._snippet_service = None
        self._preferences_service = None
        self._auth_service = None
        self._analysis_service = None

    # ----------------------------- Storage and state -----------------------------
    @property
    def kv_backend(self) -> DuckDBKeyValueStore:
        if self._kv_backend is None:
            self._kv_backend = DuckDBKeyValueStore(self.db_path, logger_obj=self.get_logger(DuckDBKeyValueStore.__module__))
        return self._kv_backend

    @property
    def local_store(self) -> LocalStore:
        if self._local_store is None:
            self._local_store = LocalStore(self.kv_backend, logger_obj=self.get_logger(LocalStore.__module__))
        return self._local_store

    @property
    def state(self) -> AppStateStore:
        if self._state is None:
            self._state = AppStateStore(self.kv_backend, logger_obj=self.get_logger(AppStateStore.__module__))
        return self._state

    # ----------------------------- Remote clients -----------------------------
    @property
    def gateway(self) -> SupabaseGateway:
        if self._gateway is None:
            if not self.credentials.has_backend:
                self.logger.info("No backend credentials found; running local-only")
            self._gateway = SupabaseGateway(
                self.credentials.supabase_url,
                self.credentials.supabase_key,
                logger_obj=self.get_logger(SupabaseGateway.__module__),
            )
        return self._gateway

    @property
    def ai_client(self) -> GeminiClient:
        if self._ai_client is None:
            self._ai_client = GeminiClient(
                self.credentials.gemini_api_key, logger_obj=self.get_logger(GeminiClient.__module__)
            )
        return self._ai_client

    @property
    def monitor(self) -> ConnectivityMonitor:
        if self._monitor is None:
            probe = None
            if self.gateway.configured:
                async def probe() -> bool:
                    return await self.gateway.health_check(Settings.CONNECTIVITY_PROBE_TIMEOUT)
            self._monitor = ConnectivityMonitor(probe, logger_obj=self.get_logger(ConnectivityMonitor.__module__))
        return self._monitor

    # ----------------------------- Services -----------------------------
    @property
    def engine(self) -> SyncEngine:
        if self._engine is None:
            self._engine = SyncEngine(
                self.local_store,
                self.gateway,
                self.state,
                logger_obj=self.get_logger(SyncEngine.__module__),
                is_online=self.monitor.is_online,
            )
        return self._engine

    @property
    def snippet_service(self) -> SnippetService:
        if self._snippet_service is None:
            self._snippet_service = SnippetService(
                self.local_store, self.gateway, self.state, self.engine,
                logger_obj=self.get_logger(SnippetService.__module__),
            )
        return self._snippet_service

    @property
    def preferences_service(self) -> PreferencesService:
        if self._preferences_service is None:
            self._preferences_service = PreferencesService(
                self.local_store, self.gateway, self.state, self.engine,
                logger_obj=self.get_logger(PreferencesService.__module__),
            )
        return self._preferences_service

    @property
    def auth_service(self) -> AuthService:
        if self._auth_service is None:
            self._auth_service = AuthService(
                self.gateway, self.local_store, self.state, self.engine, self.preferences_service,
                logger_obj=self.get_logger(AuthService.__module__),
            )
        return self._auth_service

    @property
    def analysis_service(self) -> AnalysisService:
        if self._analysis_service is None:
            self._analysis_service = AnalysisService(
                self.ai_client, self.state, logger_obj=self.get_logger(AnalysisService.__module__)
            )
        return self._analysis_service

    # ----------------------------- Lifecycle -----------------------------
    async def start(self, watch: bool = False) -> None:
        """Probe connectivity, restore the session and run the startup sync pass.

        With ``watch`` the connectivity probe keeps running in the background.
        """
        await self.monitor.check()
        await self.auth_service.restore_session()
        startup = self.engine.initialize(self.monitor)
        if startup is not None:
            await startup
        if watch:
            self.monitor.start()

    async def shutdown(self) -> None:
        await self.engine.wait_idle()
        self.engine.cleanup()
        await self.monitor.stop()
        await asyncio.gather(self.gateway.close(), self.ai_client.close())

    def get_logger(self, name: Optional[str] = None) -> logging.Logger:
        """Get a logger instance."""
        if name:
            return logging.getLogger(name)
        return self.logger
