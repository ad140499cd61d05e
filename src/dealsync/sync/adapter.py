"""Remote CRM adapter -- performs one queued unit of work against the CRM.

RemoteSyncAdapter is the contract the queue processor depends on.
HttpRemoteSyncAdapter implements it on top of the CRM integration
function, an HTTP endpoint that accepts JSON ``{"action": ..., ...}``
requests and answers with ``{"success": bool, ...}``:

- upsert_deal: create or update a remote deal (``dealId`` null creates)
- get_deal: fetch one remote deal by ``dealId``
- delete_deal: delete one remote deal by ``dealId``

Local concerns stay here: state mappings are resolved before a push and a
pulled remote stage is mapped back to a business state. A pull or poll
never overwrites a diverging state or amount: the divergence is reported
with both snapshots so it becomes a conflict, and a record with a pending
conflict is not touched at all. Every attempt lands in the sync log.

Failure classes: network errors and 5xx are transient (retried once by
tenacity inside the adapter, then reported); 4xx and ``success: false``
bodies are permanent; a missing record or state mapping is an invalid
reference. All of them come back as ``AdapterResult(success=False)``.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from src.dealsync.config import get_settings
from src.dealsync.core.monitoring import track_remote_call
from src.dealsync.sync.config_store import ConfigProvider
from src.dealsync.sync.conflict_store import ConflictStore
from src.dealsync.sync.conflicts import classify_divergence
from src.dealsync.sync.exceptions import (
    InvalidReference,
    PermanentRemoteError,
    RemoteSyncError,
    TransientRemoteError,
)
from src.dealsync.sync.mapping_store import StateMappingStore
from src.dealsync.sync.record_store import RecordStore
from src.dealsync.sync.schemas import (
    AdapterResult,
    BusinessRecord,
    BusinessState,
    ConflictType,
    DealSnapshot,
    DeletePayload,
    OperationType,
    PollOutcome,
    PollReport,
    PullPayload,
    PushPayload,
    RemoteErrorKind,
    ResolutionPayload,
    SyncDirection,
    SyncLogOperation,
    SyncPayload,
)
from src.dealsync.sync.sync_log_store import SyncLogStore

logger = structlog.get_logger(__name__)

CONFLICT_MESSAGE = "Conflict detected - manual resolution required"

# One quick retry for transient failures; the queue owns the long backoff.
_crm_retry = retry(
    stop=stop_after_attempt(2),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=2),
    retry=retry_if_exception_type(TransientRemoteError),
    reraise=True,
)


class RemoteSyncAdapter(ABC):
    """Contract between the queue processor and the remote CRM."""

    @abstractmethod
    async def execute(
        self, operation: OperationType, payload: SyncPayload
    ) -> AdapterResult:
        """Perform one unit of remote work. Never raises for remote failures."""
        ...

    @abstractmethod
    async def poll(self, owner_id: str) -> PollReport:
        """Pull every linked record of ``owner_id`` from the remote CRM."""
        ...


# ── Wire models ─────────────────────────────────────────────────────────────


class RemoteDeal(BaseModel):
    """Deal as returned by the CRM integration function (camelCase)."""

    model_config = ConfigDict(populate_by_name=True)

    deal_id: str = Field(alias="dealId")
    name: str | None = None
    pipeline_id: str | None = Field(default=None, alias="pipelineId")
    stage_id: str | None = Field(default=None, alias="stageId")
    amount: float | None = None
    close_date: datetime | None = Field(default=None, alias="closeDate")


class RemoteResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool
    deal_id: str | None = Field(default=None, alias="dealId")
    deal: RemoteDeal | None = None
    error: str | None = None


# ── HTTP implementation ─────────────────────────────────────────────────────


class HttpRemoteSyncAdapter(RemoteSyncAdapter):
    """RemoteSyncAdapter backed by the CRM integration function.

    Args:
        records: RecordStore for local snapshots and pulled values.
        mappings: StateMappingStore for stage lookups in both directions.
        configs: Per-owner configuration (bidirectional checks on update).
        client: Optional pre-built httpx.AsyncClient (tests inject a
            MockTransport). Defaults to one built from settings.
        amount_tolerance: Defaults to SYNC_AMOUNT_TOLERANCE.
        conflicts: ConflictStore consulted before a poll touches a record.
            Without one, pending conflicts are not checked on polls.
        sync_log: SyncLogStore receiving one entry per attempt.
    """

    def __init__(
        self,
        records: RecordStore,
        mappings: StateMappingStore,
        configs: ConfigProvider,
        client: httpx.AsyncClient | None = None,
        amount_tolerance: float | None = None,
        conflicts: ConflictStore | None = None,
        sync_log: SyncLogStore | None = None,
    ) -> None:
        settings = get_settings()
        self._records = records
        self._mappings = mappings
        self._configs = configs
        self._conflicts = conflicts
        self._sync_log = sync_log
        self._url = settings.CRM_FUNCTION_URL
        self._tolerance = (
            settings.SYNC_AMOUNT_TOLERANCE if amount_tolerance is None else amount_tolerance
        )
        if client is None:
            headers = {"Content-Type": "application/json"}
            if settings.CRM_FUNCTION_TOKEN:
                headers["Authorization"] = f"Bearer {settings.CRM_FUNCTION_TOKEN}"
            client = httpx.AsyncClient(headers=headers, timeout=settings.CRM_API_TIMEOUT)
        self._client = client

    async def aclose(self) -> None:
        await self._client.aclose()

    # ── RemoteSyncAdapter ───────────────────────────────────────────────────

    async def execute(
        self, operation: OperationType, payload: SyncPayload
    ) -> AdapterResult:
        try:
            result = await self._dispatch(operation, payload)
        except InvalidReference as exc:
            result = AdapterResult(
                success=False,
                error=str(exc),
                error_kind=RemoteErrorKind.INVALID_REFERENCE,
            )
        except TransientRemoteError as exc:
            result = AdapterResult(
                success=False, error=str(exc), error_kind=RemoteErrorKind.TRANSIENT
            )
        except RemoteSyncError as exc:
            result = AdapterResult(
                success=False, error=str(exc), error_kind=RemoteErrorKind.PERMANENT
            )

        if not result.success:
            await self._log_failure(operation, payload, result)
        return result

    async def poll(self, owner_id: str) -> PollReport:
        """Pull every linked record; one failing record does not stop the rest."""
        records = await self._records.list_linked(owner_id)
        results: list[PollOutcome] = []

        for record in records:
            try:
                outcome = await self._poll_record(record)
            except (RemoteSyncError, InvalidReference) as exc:
                logger.warning(
                    "crm_adapter.poll_record_failed",
                    owner_id=owner_id,
                    record_id=record.id,
                    error=str(exc),
                )
                outcome = PollOutcome(record_id=record.id, success=False, error=str(exc))
                await self._log(
                    owner_id=owner_id,
                    record_id=record.id,
                    operation_type=SyncLogOperation.REMOTE_TO_APP,
                    direction=SyncDirection.INBOUND,
                    success=False,
                    remote_deal_id=record.remote_deal_id,
                    old_state=record.state.value,
                    old_amount=record.amount,
                    error_message=str(exc),
                )
            else:
                # Unchanged records are not logged on every poll tick.
                if outcome.changed or outcome.conflict_type is not None:
                    await self._log_inbound(record, outcome)
            results.append(outcome)

        logger.info(
            "crm_adapter.poll_complete",
            owner_id=owner_id,
            records=len(records),
            changed=sum(1 for r in results if r.changed),
            conflicts=sum(1 for r in results if r.conflict_type is not None),
            blocked=sum(1 for r in results if r.blocked_by is not None),
            failed=sum(1 for r in results if not r.success),
        )
        return PollReport(success=True, results=results)

    # ── Operations ──────────────────────────────────────────────────────────

    async def _dispatch(
        self, operation: OperationType, payload: SyncPayload
    ) -> AdapterResult:
        if isinstance(payload, PushPayload):
            return await self._push(operation, payload)
        if isinstance(payload, PullPayload):
            return await self._pull(payload.record_id, payload.owner_id)
        if isinstance(payload, DeletePayload):
            return await self._delete(payload)
        if isinstance(payload, ResolutionPayload):
            return await self._apply_resolution(operation, payload)
        raise PermanentRemoteError(f"Unsupported payload for {operation.value}")

    async def _push(self, operation: OperationType, payload: PushPayload) -> AdapterResult:
        record = await self._load_record(payload.snapshot.record_id, payload.snapshot.owner_id)
        force_amount = payload.force_amount or operation in (
            OperationType.FORCE_AMOUNT_UPDATE,
            OperationType.MASS_AMOUNT_SYNC,
        )

        if operation == OperationType.UPDATE and record.remote_deal_id:
            config = await self._configs.get(record.owner_id)
            if config.bidirectional_sync:
                remote = await self._remote_snapshot(record)
                local = record.snapshot()
                divergence = (
                    classify_divergence(local, remote, self._tolerance) if remote else None
                )
                if force_amount and divergence == ConflictType.AMOUNT:
                    divergence = None
                if divergence is not None:
                    logger.info(
                        "crm_adapter.push_conflict",
                        record_id=record.id,
                        remote_deal_id=record.remote_deal_id,
                    )
                    return AdapterResult(
                        success=False,
                        conflict=True,
                        error=CONFLICT_MESSAGE,
                        error_kind=RemoteErrorKind.PERMANENT,
                        local=local,
                        remote=remote,
                    )

        deal_id, stage_id = await self._upsert_deal(record, force_amount=force_amount)
        await self._log(
            owner_id=record.owner_id,
            record_id=record.id,
            operation_type=SyncLogOperation.APP_TO_REMOTE,
            direction=SyncDirection.OUTBOUND,
            success=True,
            remote_deal_id=deal_id,
            new_state=record.state.value,
            new_amount=record.amount,
            remote_stage_id=stage_id,
            force_sync=force_amount,
        )
        return AdapterResult(
            success=True,
            changed=True,
            new_state=record.state.value,
            remote_deal_id=deal_id,
        )

    async def _pull(self, record_id: str, owner_id: str | None) -> AdapterResult:
        record = await self._load_record(record_id, owner_id)
        outcome = await self._poll_record(record)

        if outcome.blocked_by is not None:
            return AdapterResult(
                success=False,
                error=f"Blocked by pending conflict {outcome.blocked_by}",
                error_kind=RemoteErrorKind.PERMANENT,
            )
        if outcome.conflict_type is not None:
            return AdapterResult(
                success=False,
                conflict=True,
                error=CONFLICT_MESSAGE,
                error_kind=RemoteErrorKind.PERMANENT,
                local=outcome.local,
                remote=outcome.remote,
            )

        await self._log_inbound(record, outcome)
        return AdapterResult(
            success=True,
            changed=outcome.changed,
            new_state=record.state.value,
            remote_deal_id=record.remote_deal_id,
        )

    async def _delete(self, payload: DeletePayload) -> AdapterResult:
        record = await self._load_record(payload.record_id, payload.owner_id)
        if not record.remote_deal_id:
            return AdapterResult(success=True, changed=False)

        await self._call("delete_deal", {"dealId": record.remote_deal_id})
        await self._records.link_remote(record.id, None)
        await self._log(
            owner_id=record.owner_id,
            record_id=record.id,
            operation_type=SyncLogOperation.APP_TO_REMOTE,
            direction=SyncDirection.OUTBOUND,
            success=True,
            remote_deal_id=record.remote_deal_id,
            old_state=record.state.value,
            old_amount=record.amount,
        )
        return AdapterResult(success=True, changed=True, remote_deal_id=record.remote_deal_id)

    async def _apply_resolution(
        self, operation: OperationType, payload: ResolutionPayload
    ) -> AdapterResult:
        record = await self._load_record(payload.local.record_id, payload.local.owner_id)

        if operation == OperationType.RESOLVE_CONFLICT_USE_LOCAL:
            deal_id, stage_id = await self._upsert_deal(record, force_amount=True)
            await self._log(
                owner_id=record.owner_id,
                record_id=record.id,
                operation_type=SyncLogOperation.APP_TO_REMOTE,
                direction=SyncDirection.OUTBOUND,
                success=True,
                remote_deal_id=deal_id,
                old_state=payload.remote.state,
                new_state=record.state.value,
                old_amount=payload.remote.amount,
                new_amount=record.amount,
                remote_stage_id=stage_id,
                force_sync=True,
            )
            return AdapterResult(
                success=True,
                changed=True,
                new_state=record.state.value,
                remote_deal_id=deal_id,
            )

        remote_state = _as_state(payload.remote.state)
        updated = await self._records.apply_remote(
            record.id,
            state=remote_state,
            amount=payload.remote.amount,
        )
        await self._log(
            owner_id=record.owner_id,
            record_id=record.id,
            operation_type=SyncLogOperation.REMOTE_TO_APP,
            direction=SyncDirection.INBOUND,
            success=True,
            remote_deal_id=record.remote_deal_id,
            old_state=record.state.value,
            new_state=updated.state.value,
            old_amount=record.amount,
            new_amount=updated.amount,
        )
        return AdapterResult(
            success=True,
            changed=updated.state != record.state or updated.amount != record.amount,
            new_state=updated.state.value,
            remote_deal_id=record.remote_deal_id,
        )

    async def _poll_record(self, record: BusinessRecord) -> PollOutcome:
        """Fetch a record's remote deal and reconcile it with the local record.

        A record with a pending conflict is left alone and the remote deal
        is not fetched. A state or amount divergence is reported with its
        ConflictType and nothing is written. Otherwise a changed remote
        close date is applied locally.
        """
        if not record.remote_deal_id:
            raise PermanentRemoteError(f"Record {record.id} has no linked remote deal")

        if self._conflicts is not None:
            pending = await self._conflicts.pending_for_record(record.id)
            if pending is not None:
                logger.info(
                    "crm_adapter.poll_record_blocked",
                    record_id=record.id,
                    conflict_id=pending.id,
                )
                return PollOutcome(record_id=record.id, success=True, blocked_by=pending.id)

        remote = await self._remote_snapshot(record)
        if remote is None:
            raise PermanentRemoteError(f"Remote deal {record.remote_deal_id} not found")

        local = record.snapshot()
        remote_state = _as_state(remote.state)
        state_changed = remote_state is not None and remote_state != record.state
        amount_changed = (
            abs((record.amount or 0.0) - (remote.amount or 0.0)) > self._tolerance
        )
        close_date_changed = (
            remote.close_date is not None
            and _day(remote.close_date) != _day(record.close_date)
        )

        divergence = classify_divergence(local, remote, self._tolerance)
        if divergence is not None:
            logger.info(
                "crm_adapter.poll_divergence",
                record_id=record.id,
                remote_deal_id=record.remote_deal_id,
                conflict_type=divergence.value,
            )
            return PollOutcome(
                record_id=record.id,
                success=True,
                state_changed=state_changed,
                amount_changed=amount_changed,
                close_date_changed=close_date_changed,
                conflict_type=divergence,
                local=local,
                remote=remote,
            )

        if close_date_changed:
            record = await self._records.apply_remote(record.id, close_date=remote.close_date)

        return PollOutcome(
            record_id=record.id,
            success=True,
            changed=close_date_changed,
            close_date_changed=close_date_changed,
            local=local,
            remote=remote,
        )

    # ── Sync log ────────────────────────────────────────────────────────────

    async def _log(self, **entry: Any) -> None:
        if self._sync_log is None:
            return
        try:
            await self._sync_log.append(**entry)
        except Exception:
            # The sync outcome stands even when its audit row is lost.
            logger.exception("crm_adapter.sync_log_failed", record_id=entry.get("record_id"))

    async def _log_inbound(self, record: BusinessRecord, outcome: PollOutcome) -> None:
        remote = outcome.remote
        conflicted = outcome.conflict_type is not None
        await self._log(
            owner_id=record.owner_id,
            record_id=record.id,
            operation_type=SyncLogOperation.REMOTE_TO_APP,
            direction=SyncDirection.INBOUND,
            success=not conflicted,
            remote_deal_id=record.remote_deal_id,
            old_state=record.state.value,
            new_state=remote.state if remote else None,
            old_amount=record.amount,
            new_amount=remote.amount if remote else None,
            remote_stage_id=remote.stage_id if remote else None,
            error_message=CONFLICT_MESSAGE if conflicted else None,
        )

    async def _log_failure(
        self, operation: OperationType, payload: SyncPayload, result: AdapterResult
    ) -> None:
        if isinstance(payload, PushPayload):
            record_id, owner_id = payload.snapshot.record_id, payload.snapshot.owner_id
        elif isinstance(payload, ResolutionPayload):
            record_id, owner_id = payload.local.record_id, payload.local.owner_id
        else:
            record_id, owner_id = payload.record_id, payload.owner_id

        inbound = operation in (
            OperationType.PULL,
            OperationType.RESOLVE_CONFLICT_USE_REMOTE,
        )
        local, remote = result.local, result.remote
        before, after = (local, remote) if inbound else (remote, local)
        if after is None and isinstance(payload, PushPayload):
            after = payload.snapshot
        force_sync = operation in (
            OperationType.FORCE_AMOUNT_UPDATE,
            OperationType.MASS_AMOUNT_SYNC,
            OperationType.RESOLVE_CONFLICT_USE_LOCAL,
        ) or (isinstance(payload, PushPayload) and payload.force_amount)

        await self._log(
            owner_id=owner_id,
            record_id=record_id,
            operation_type=(
                SyncLogOperation.REMOTE_TO_APP if inbound else SyncLogOperation.APP_TO_REMOTE
            ),
            direction=SyncDirection.INBOUND if inbound else SyncDirection.OUTBOUND,
            success=False,
            old_state=before.state if before else None,
            new_state=after.state if after else None,
            old_amount=before.amount if before else None,
            new_amount=after.amount if after else None,
            remote_stage_id=remote.stage_id if remote else None,
            force_sync=force_sync,
            error_message=result.error,
        )

    # ── Helpers ─────────────────────────────────────────────────────────────

    async def _load_record(self, record_id: str, owner_id: str | None) -> BusinessRecord:
        if owner_id is not None:
            return await self._records.get_for_owner(owner_id, record_id)
        record = await self._records.get(record_id)
        if record is None:
            raise InvalidReference("record", record_id)
        return record

    async def _remote_snapshot(self, record: BusinessRecord) -> DealSnapshot | None:
        response = await self._call("get_deal", {"dealId": record.remote_deal_id})
        if response.deal is None:
            return None
        deal = response.deal
        state = None
        if deal.stage_id:
            mapped = await self._mappings.find_state_for_stage(record.owner_id, deal.stage_id)
            state = mapped.value if mapped else None
        return DealSnapshot(
            record_id=record.id,
            owner_id=record.owner_id,
            name=deal.name,
            state=state,
            stage_id=deal.stage_id,
            amount=deal.amount if deal.amount is not None else 0.0,
            close_date=deal.close_date,
        )

    async def _upsert_deal(
        self, record: BusinessRecord, *, force_amount: bool
    ) -> tuple[str, str]:
        """Create or update the remote deal; returns ``(deal_id, stage_id)``."""
        pipeline_id, stage_id = await self._mappings.require(record.owner_id, record.state)
        response = await self._call(
            "upsert_deal",
            {
                "dealId": record.remote_deal_id,
                "name": record.name,
                "pipelineId": pipeline_id,
                "stageId": stage_id,
                "amount": record.amount,
                "closeDate": record.close_date.isoformat() if record.close_date else None,
                "forceAmount": force_amount,
            },
        )
        deal_id = response.deal_id or record.remote_deal_id
        if deal_id is None:
            raise PermanentRemoteError("CRM integration returned no deal id")
        if deal_id != record.remote_deal_id:
            await self._records.link_remote(record.id, deal_id)
        logger.info(
            "crm_adapter.deal_upserted",
            record_id=record.id,
            remote_deal_id=deal_id,
            stage_id=stage_id,
            force_amount=force_amount,
        )
        return deal_id, stage_id

    @_crm_retry
    async def _call(self, action: str, body: dict[str, Any]) -> RemoteResponse:
        """POST one action to the CRM integration function.

        Raises:
            TransientRemoteError: Network failure, timeout, or 5xx.
            PermanentRemoteError: 4xx, malformed body, or ``success: false``.
        """
        async with track_remote_call(action) as tracker:
            try:
                response = await self._client.post(self._url, json={"action": action, **body})
            except httpx.TransportError as exc:
                tracker["status"] = "transport_error"
                raise TransientRemoteError(f"{action}: {exc.__class__.__name__}: {exc}") from exc

            if response.status_code >= 500:
                tracker["status"] = "server_error"
                raise TransientRemoteError(
                    f"{action}: CRM integration returned {response.status_code}",
                    status_code=response.status_code,
                )
            if response.status_code >= 400:
                tracker["status"] = "client_error"
                raise PermanentRemoteError(
                    f"{action}: CRM integration returned {response.status_code}: "
                    f"{response.text[:200]}",
                    status_code=response.status_code,
                )

            try:
                parsed = RemoteResponse.model_validate(response.json())
            except (ValueError, ValidationError) as exc:
                tracker["status"] = "malformed"
                raise PermanentRemoteError(f"{action}: malformed response") from exc

            if not parsed.success:
                tracker["status"] = "rejected"
                raise PermanentRemoteError(f"{action}: {parsed.error or 'rejected'}")
            return parsed


def _as_state(value: str | None) -> BusinessState | None:
    if value is None:
        return None
    try:
        return BusinessState(value)
    except ValueError:
        return None


def _day(value: datetime | None) -> str | None:
    return value.date().isoformat() if value else None
