"""Authentication flows and session persistence."""

import json
import logging
from typing import Optional

import duckdb

from bugsentinel.api.error_handling import LocalStorageError, error_message
from bugsentinel.config.settings import Settings
from bugsentinel.data.services.sync_types import ServiceResult, Session, User


class AuthService:
    """
    Sign-in, sign-up and sign-out on top of the gateway's auth primitives.

    Session changes reported by the gateway are mirrored into the
    application state and persisted, so a later run can restore the session
    and keep working offline.
    """

    def __init__(
        self,
        gateway,
        local_store,
        state,
        engine,
        preferences,
        logger_obj: Optional[logging.Logger] = None,
    ):
        self.gateway = gateway
        self.local_store = local_store
        self.backend = local_store.backend
        self.state = state
        self.engine = engine
        self.preferences = preferences
        self.logger = logger_obj or logging.getLogger(__name__)
        self._unsubscribe = gateway.on_session_change(self._on_session_change)

    def detach(self) -> None:
        self._unsubscribe()

    # ----------------------------- Session persistence -----------------------------
    def _on_session_change(self, session: Optional[Session]) -> None:
        self.state.set_user(session.user if session else None)
        try:
            if session:
                self.backend.set_item(Settings.SESSION_KEY, json.dumps(session.to_dict()))
            else:
                self.backend.remove_item(Settings.SESSION_KEY)
        except (LocalStorageError, duckdb.Error) as e:
            self.logger.warning(f"Could not persist session change: {e}")

    def _stored_session(self) -> Optional[Session]:
        try:
            raw = self.backend.get_item(Settings.SESSION_KEY)
            return Session.from_dict(json.loads(raw)) if raw else None
        except (json.JSONDecodeError, KeyError, TypeError, duckdb.Error) as e:
            self.logger.warning(f"Ignoring unreadable stored session: {e}")
            return None

    async def restore_session(self) -> ServiceResult:
        """Re-attach the stored session; verified against the server when online."""
        session = self._stored_session()
        if session is None:
            return ServiceResult(data=None)

        self.gateway.restore_session(session)
        if self.engine.is_online and self.gateway.configured:
            try:
                result = await self.gateway.get_current_user()
            except Exception as e:
                self.logger.warning(f"Could not verify stored session, keeping it: {e}")
            else:
                if not result.ok and result.status in (401, 403):
                    self.logger.info("Stored session expired, signing out locally")
                    self.gateway.restore_session(None)
                    return ServiceResult(error="Session expired, please sign in again")
                if result.ok and result.data is not None:
                    self.state.set_user(result.data)

        await self.preferences.load_preferences()
        return ServiceResult(data=self.state.user)

    # ----------------------------- Flows -----------------------------
    @staticmethod
    def _validate(email: str, password: str) -> Optional[str]:
        if not email or "@" not in email:
            return "A valid email address is required"
        if not password:
            return "Password is required"
        return None

    async def sign_in(self, email: str, password: str) -> ServiceResult:
        problem = self._validate(email, password)
        if problem:
            return ServiceResult(error=problem)
        if not self.gateway.configured:
            return ServiceResult(error="Remote backend is not configured")

        try:
            result = await self.gateway.sign_in(email, password)
        except Exception as e:
            self.logger.error(f"Sign-in failed: {e}", exc_info=True)
            return ServiceResult(error=error_message(e, "Sign-in failed"))
        if not result.ok:
            return ServiceResult(error=result.error)

        await self.preferences.load_preferences()
        return ServiceResult(data=result.data.user)

    async def sign_up(self, email: str, password: str) -> ServiceResult:
        """Register; data is the new User (signed in only if no confirmation is required)."""
        problem = self._validate(email, password)
        if problem:
            return ServiceResult(error=problem)
        if not self.gateway.configured:
            return ServiceResult(error="Remote backend is not configured")

        try:
            result = await self.gateway.sign_up(email, password)
        except Exception as e:
            self.logger.error(f"Sign-up failed: {e}", exc_info=True)
            return ServiceResult(error=error_message(e, "Sign-up failed"))
        if not result.ok:
            return ServiceResult(error=result.error)

        if isinstance(result.data, User):
            return ServiceResult(data=result.data)
        await self.preferences.load_preferences()
        return ServiceResult(data=result.data.user)

    async def sign_out(self, discard_pending: bool = False) -> ServiceResult:
        """Sign out and wipe local data.

        Pending changes get one final sync attempt when online; if some are
        still unsynced the sign-out is refused unless ``discard_pending``.
        """
        pending = self.local_store.pending_count()
        if pending and self.engine.is_online:
            await self.engine.force_sync_now()
            pending = self.local_store.pending_count()

        if pending and not discard_pending:
            return ServiceResult(
                error=f"{pending} change(s) not yet synced; sync first or sign out discarding them"
            )
        if pending:
            self.logger.warning(f"Signing out with {pending} unsynced change(s) discarded")

        try:
            result = await self.gateway.sign_out()
            if not result.ok:
                self.logger.warning(f"Remote sign-out rejected: {result.error}")
        except Exception as e:
            self.logger.warning(f"Remote sign-out failed, session dropped locally: {e}")

        try:
            self.local_store.clear_all()
        except LocalStorageError as e:
            return ServiceResult(error=error_message(e, "Failed to clear local data"))
        self.state.logout()
        return ServiceResult(data=True)
