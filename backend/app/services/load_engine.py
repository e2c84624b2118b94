"""Orchestration layer: applies status-machine decisions to stored loads."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from app.core.config import get_settings
from app.core.logging import logger
from app.models.loads import (
    AutoGenerateRequest,
    AutoGenerateResult,
    HistoryChangeType,
    LoadCreateRequest,
    LoadRecord,
    LoadStatus,
    LoadStatusReverseRequest,
    LoadStatusTransitionRequest,
    LoadTransitionsResponse,
    RateConfirmationEventRequest,
    RateConfirmationEventResponse,
    RateConfirmationReadiness,
    RateConfirmationStatus,
    StatusEvent,
    StatusMetrics,
    StatusTimeline,
    StatusTransitionResult,
)
from app.services import status_workflow
from app.services.load_state import LoadStateStore, load_state_store
from app.services.rate_confirmation_workflow import (
    RateConfirmationWorkflow,
    can_generate_rate_confirmation,
    get_next_action,
)


class TransitionRejected(Exception):
    """A requested status change failed validation; carries the result for the API."""

    def __init__(self, result: StatusTransitionResult) -> None:
        super().__init__(result.error or "Status transition rejected")
        self.result = result


class LoadEngine:
    """Business orchestration for the load lifecycle."""

    def __init__(self, store: Optional[LoadStateStore] = None) -> None:
        self.store = store or load_state_store
        self.rate_confirmations = RateConfirmationWorkflow(store=self.store)

    def _require_load(self, organization_id: str, load_id: str) -> Dict[str, Any]:
        load = self.store.get_load(organization_id, load_id)
        if not load or load.get("deleted"):
            raise KeyError(load_id)
        return load

    def create_load(self, request: LoadCreateRequest, organization_id: str, actor: str) -> Dict[str, Any]:
        load_id = request.load_id or self.store.generate_load_id(organization_id)
        if self.store.get_load(organization_id, load_id):
            raise ValueError(f"Load {load_id} already exists")

        payload = request.model_dump(exclude={"load_id"})
        record = LoadRecord(load_id=load_id, **payload)
        if record.carrier is not None and not record.carrier_id:
            record.carrier_id = record.carrier.carrier_id

        missing = status_workflow.missing_fields_for(record.status, record)
        if missing:
            logger.info(
                "Load creation rejected",
                organization_id=organization_id,
                load_id=load_id,
                status=record.status.value,
                missing_fields=missing,
            )
            raise TransitionRejected(
                StatusTransitionResult(
                    success=False,
                    error="Missing required fields for this transition",
                    missing_fields=missing,
                )
            )

        row = self.store.upsert_load(
            organization_id,
            record,
            history={
                "change_type": HistoryChangeType.LOAD_CREATED,
                "status": record.status,
                "change_reason": request.source,
                "actor": actor,
            },
        )
        logger.info("Load created", organization_id=organization_id, load_id=load_id, status=record.status.value)
        return row

    def get_load(self, organization_id: str, load_id: str) -> Dict[str, Any]:
        return self._require_load(organization_id, load_id)

    def list_loads(self, organization_id: str, status: Optional[LoadStatus] = None) -> List[Dict[str, Any]]:
        return self.store.list_loads(organization_id, status=status)

    def describe_transitions(self, organization_id: str, load_id: str) -> LoadTransitionsResponse:
        load = self._require_load(organization_id, load_id)
        status = LoadStatus(load["status"])
        rc_status = RateConfirmationStatus(load.get("rate_confirmation_status") or "none")
        return LoadTransitionsResponse(
            load_id=load_id,
            status=status,
            status_label=status_workflow.format_status(status),
            available_transitions=status_workflow.get_available_transitions(status),
            previous_status=status_workflow.get_previous_status(status),
            can_reverse=status_workflow.can_reverse_status(status),
            progress=status_workflow.get_status_progress(status),
            is_terminal=status_workflow.is_terminal_status(status),
            rate_confirmation_status=rc_status,
            next_action=get_next_action(status, rc_status),
        )

    def transition_load_status(
        self,
        load_id: str,
        request: LoadStatusTransitionRequest,
        organization_id: str,
        actor: str,
    ) -> Dict[str, Any]:
        load = self._require_load(organization_id, load_id)
        current_status = LoadStatus(load["status"])

        result = status_workflow.transition_status(current_status, request.status, load)
        if not result.success:
            logger.info(
                "Load status transition rejected",
                organization_id=organization_id,
                load_id=load_id,
                from_status=current_status.value,
                to_status=request.status.value,
                missing_fields=result.missing_fields,
            )
            raise TransitionRejected(result)

        fields: Dict[str, Any] = {"status": result.new_status.value}
        if request.notes:
            fields["notes"] = request.notes
        row = self.store.apply_load_update(
            organization_id,
            load_id,
            fields,
            expected_status=current_status,
            expected_version=request.expected_version,
            history={
                "change_type": HistoryChangeType.STATUS_TRANSITION,
                "status": result.new_status,
                "change_reason": request.notes,
                "actor": actor,
                "details": {"from_status": current_status.value, "to_status": result.new_status.value},
            },
        )
        logger.info(
            "Load status changed",
            organization_id=organization_id,
            load_id=load_id,
            from_status=current_status.value,
            to_status=result.new_status.value,
            version=row.get("version"),
        )
        return row

    def reverse_load_status(
        self,
        load_id: str,
        request: LoadStatusReverseRequest,
        organization_id: str,
        actor: str,
    ) -> Dict[str, Any]:
        load = self._require_load(organization_id, load_id)
        current_status = LoadStatus(load["status"])
        previous = status_workflow.get_previous_status(current_status)
        if previous is None:
            raise TransitionRejected(
                StatusTransitionResult(
                    success=False,
                    error=f"Cannot reverse status {current_status.value}",
                )
            )

        row = self.store.apply_load_update(
            organization_id,
            load_id,
            {"status": previous.value},
            expected_status=current_status,
            expected_version=request.expected_version,
            history={
                "change_type": HistoryChangeType.STATUS_REVERSAL,
                "status": previous,
                "change_reason": request.reason,
                "actor": actor,
                "details": {"from_status": current_status.value, "to_status": previous.value},
            },
        )
        logger.info(
            "Load status reversed",
            organization_id=organization_id,
            load_id=load_id,
            from_status=current_status.value,
            to_status=previous.value,
        )
        return row

    def apply_rate_confirmation_event(
        self,
        load_id: str,
        request: RateConfirmationEventRequest,
        organization_id: str,
        actor: str,
    ) -> RateConfirmationEventResponse:
        self._require_load(organization_id, load_id)
        previous_status, update, row = self.rate_confirmations.handle_event(
            organization_id,
            load_id,
            request.event,
            details=request.details,
            actor=actor,
        )
        return RateConfirmationEventResponse(
            load_id=load_id,
            event=request.event,
            previous_status=previous_status,
            update=update,
            load=LoadRecord(**row),
        )

    def rate_confirmation_readiness(self, organization_id: str, load_id: str) -> RateConfirmationReadiness:
        load = self.store.get_load(organization_id, load_id)
        if not load or load.get("deleted"):
            return can_generate_rate_confirmation(None)
        return can_generate_rate_confirmation(load)

    def auto_generate_rate_confirmations(
        self,
        request: AutoGenerateRequest,
        organization_id: str,
        actor: str,
    ) -> AutoGenerateResult:
        return self.rate_confirmations.auto_generate(
            organization_id,
            statuses=request.statuses,
            auto_send=request.auto_send,
            limit=request.limit or get_settings().rate_confirmation_batch_limit,
            actor=actor,
        )

    def history(self, organization_id: str, load_id: str) -> List[Dict[str, Any]]:
        self._require_load(organization_id, load_id)
        return self.store.list_history(organization_id, load_id)

    def _status_events(self, organization_id: str, load_id: str) -> List[StatusEvent]:
        events: List[StatusEvent] = []
        last_status: Optional[str] = None
        for entry in self.store.list_history(organization_id, load_id):
            status = entry.get("status")
            if not status or status == last_status:
                continue
            events.append(
                StatusEvent(
                    status=LoadStatus(status),
                    timestamp=datetime.fromisoformat(entry["created_at"]),
                    user=entry.get("actor"),
                    notes=entry.get("change_reason"),
                )
            )
            last_status = status
        return events

    def timeline(self, organization_id: str, load_id: str) -> StatusTimeline:
        self._require_load(organization_id, load_id)
        return status_workflow.get_status_timeline(self._status_events(organization_id, load_id))

    def status_metrics(self, organization_id: str) -> StatusMetrics:
        loads = [
            {
                "status": load["status"],
                "status_history": self._status_events(organization_id, load["load_id"]),
            }
            for load in self.store.list_loads(organization_id)
        ]
        return status_workflow.calculate_status_metrics(loads)


load_engine = LoadEngine()
