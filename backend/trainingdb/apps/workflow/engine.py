from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from trainingdb.apps.audit import services as audit_services
from trainingdb.errors import TransitionError

from .registry import WORKFLOWS


def _state(value: Any) -> str:
    return str(getattr(value, "value", value)).upper()


def check_transition(
    db: Session,
    *,
    entity_type: str,
    from_state: Any,
    to_state: Any,
    before_obj: Any = None,
    after_obj: Any = None,
) -> bool:
    """
    Validate a transition without recording it.

    Returns False for a same-state no-op, True for a real transition and
    raises TransitionError when the workflow forbids it.
    """
    workflow = WORKFLOWS.get(entity_type)
    if not workflow:
        raise TransitionError(
            code="invalid_transition",
            detail=[{"field": "entity_type", "reason": f"No workflow registered for {entity_type}"}],
        )

    source, target = _state(from_state), _state(to_state)
    if source == target:
        return False

    allowed = workflow.get("transitions", {}).get(source, {})
    guards = allowed.get(target)
    if guards is None:
        raise TransitionError(
            code="invalid_transition",
            detail=[{"field": "status", "reason": f"Cannot transition from {source} to {target}"}],
        )

    failures: List[Dict[str, str]] = []
    for guard in guards:
        failures.extend(
            guard(
                db,
                before_obj=before_obj,
                after_obj=after_obj,
                from_state=source,
                to_state=target,
            )
        )
    if failures:
        raise TransitionError(code="missing_requirements", detail=failures)
    return True


def apply_transition(
    db: Session,
    *,
    actor_user_id: Optional[int],
    entity_type: str,
    entity_id: str,
    from_state: Any,
    to_state: Any,
    before_obj: Any = None,
    after_obj: Any = None,
    correlation_id: Optional[str] = None,
    critical: bool = True,
) -> bool:
    """
    Validate a transition and append it to the audit trail.

    Same-state requests are accepted silently and not audited.
    """
    changed = check_transition(
        db,
        entity_type=entity_type,
        from_state=from_state,
        to_state=to_state,
        before_obj=before_obj,
        after_obj=after_obj,
    )
    if not changed:
        return False

    before_payload: Dict[str, Any] = {"status": _state(from_state)}
    after_payload: Dict[str, Any] = {"status": _state(to_state)}
    if isinstance(before_obj, dict):
        before_payload.update({k: v for k, v in before_obj.items() if k != "status"})
    if isinstance(after_obj, dict):
        after_payload.update({k: v for k, v in after_obj.items() if k != "status"})

    audit_services.log_event(
        db,
        actor_user_id=actor_user_id,
        entity_type=entity_type,
        entity_id=entity_id,
        action="transition",
        before=before_payload,
        after=after_payload,
        correlation_id=correlation_id,
        metadata={"workflow": entity_type},
        critical=critical,
    )
    return True
