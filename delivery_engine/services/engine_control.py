"""
Engine Control - the global, versioned settings record.

Workers read the record fresh on every iteration, so flipping the emergency
stop takes effect on the next poll of every worker without a restart.
Turning it on or off is written to the audit trail synchronously.
"""

from delivery_engine.domain.models import AuditEvent, EngineSettings
from delivery_engine.infrastructure.audit import AuditSink
from delivery_engine.infrastructure.observability.logging import get_logger
from delivery_engine.repositories.base import SettingsStore

logger = get_logger(__name__)


class EngineControl:
    def __init__(self, store: SettingsStore, audit: AuditSink):
        self.store = store
        self.audit = audit

    async def current(self) -> EngineSettings:
        return await self.store.get()

    async def is_emergency_stop_active(self) -> bool:
        return (await self.store.get()).emergency_stop_active

    async def activate_emergency_stop(
        self, actor_ref: str, reason: str | None = None
    ) -> EngineSettings:
        return await self._set_emergency_stop(True, actor_ref, reason)

    async def deactivate_emergency_stop(
        self, actor_ref: str, reason: str | None = None
    ) -> EngineSettings:
        return await self._set_emergency_stop(False, actor_ref, reason)

    async def _set_emergency_stop(
        self, active: bool, actor_ref: str, reason: str | None
    ) -> EngineSettings:
        previous = await self.store.get()
        updated = await self.store.set_emergency_stop(active, actor_ref)

        logger.warning(
            "Emergency stop activated" if active else "Emergency stop deactivated",
            actor_ref=actor_ref,
            version=updated.version,
            reason=reason,
        )

        await self.audit.log_sync(
            AuditEvent(
                action="emergency_stop_activated" if active else "emergency_stop_deactivated",
                entity_type="engine_settings",
                entity_id="default",
                actor_ref=actor_ref,
                severity="critical",
                changes={
                    "emergency_stop_active": {
                        "from": previous.emergency_stop_active,
                        "to": updated.emergency_stop_active,
                    }
                },
                metadata={"version": updated.version, "reason": reason},
            )
        )
        return updated
