from __future__ import annotations

from typing import Any

from sqlmodel import Session, col, select

from eduauth.domain.models import AuditLog
from eduauth.infra.db import get_engine

ACTION_LOGIN = "auth.login"
ACTION_REGISTER = "auth.register"
ACTION_REFRESH_REUSE = "auth.refresh.reuse_detected"
ACTION_LOGOUT_ALL = "auth.logout_all"
ACTION_PASSWORD_CHANGE = "auth.password.change"
ACTION_PASSWORD_RESET = "auth.password.reset"
ACTION_ACCOUNT_STATUS = "auth.account.status"


def write_audit_log(
    *,
    actor_id: str | None,
    action: str,
    outcome: str,
    client_addr: str | None = None,
    detail: dict[str, Any] | None = None,
) -> None:
    log = AuditLog(
        actor_id=actor_id,
        action=action,
        outcome=outcome,
        client_addr=client_addr,
        detail=detail or {},
    )
    with Session(get_engine()) as session:
        session.add(log)
        session.commit()


def list_audit_logs(*, action: str | None = None, actor_id: str | None = None) -> list[AuditLog]:
    with Session(get_engine(), expire_on_commit=False) as session:
        statement = select(AuditLog)
        if action is not None:
            statement = statement.where(AuditLog.action == action)
        if actor_id is not None:
            statement = statement.where(AuditLog.actor_id == actor_id)
        return list(session.exec(statement.order_by(col(AuditLog.ts))).all())
