"""
Conflict resolution between the local and remote copies of a record.

Policy: last writer wins on ``updated_at``; the server wins exact ties. The
losing copy is never dropped; the caller stores it as a superseded record.
"""

from dataclasses import dataclass
from typing import Literal

from matricare.domain.errors import AmbiguousConflictError
from matricare.domain.models import RemoteDocument, RiskAssessment, SyncState
from matricare.services.common import logger


@dataclass(frozen=True)
class Resolution:
    record_id: str
    winner: RiskAssessment
    loser: RiskAssessment
    winner_side: Literal["local", "remote"]
    remote_version: int


class ConflictResolver:
    def __init__(self) -> None:
        self.logger = logger.bind(component="conflict_resolver")

    @staticmethod
    def same_payload(local: RiskAssessment, remote: RemoteDocument) -> bool:
        return remote.body == local.to_remote_body()

    @staticmethod
    def needs_resolution(local: RiskAssessment, remote: RemoteDocument) -> bool:
        """True when both copies changed independently: different payloads on different versions."""
        if ConflictResolver.same_payload(local, remote):
            return False
        # Same version with a different payload is a local change not yet pushed.
        return remote.version != local.version

    def resolve(self, local: RiskAssessment, remote: RemoteDocument) -> Resolution:
        if local.record_id != remote.record_id:
            raise ValueError("cannot resolve copies of different records")

        remote_copy = remote.to_assessment()
        remote_ts = remote.updated_at or remote_copy.updated_at
        if local.updated_at is None:
            raise AmbiguousConflictError(local.record_id, "local")
        if remote_ts is None:
            raise AmbiguousConflictError(local.record_id, "remote")

        # Both copies are rebased on the server's version counter so the next
        # put from this device carries the version the server expects.
        remote_copy = remote_copy.model_copy(update={"updated_at": remote_ts})
        local_copy = local.with_sync_state(SyncState.CONFLICT, version=remote.version)

        if remote_ts >= local.updated_at:
            resolution = Resolution(
                record_id=local.record_id,
                winner=remote_copy,
                loser=local_copy,
                winner_side="remote",
                remote_version=remote.version,
            )
        else:
            resolution = Resolution(
                record_id=local.record_id,
                winner=local_copy,
                loser=remote_copy,
                winner_side="local",
                remote_version=remote.version,
            )

        self.logger.info(
            "conflict_resolved",
            record_id=local.record_id,
            winner=resolution.winner_side,
            local_updated_at=local.updated_at.isoformat(),
            remote_updated_at=remote_ts.isoformat(),
            remote_version=remote.version,
        )
        return resolution
