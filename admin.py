"""User account administration.

Not part of the loan state machine.  The outstanding-loan and unpaid-fine
check that guards user deletion lives here, at the administrative boundary.
"""
from typing import Optional, Union

from sqlalchemy.exc import IntegrityError

from audit import AuditedService, AuditSink, Principal
from database import SessionFactory, unit_of_work
from errors import AlreadyExists, HasDependentRecords, UserNotFound, ValidationError
from lifecycle import is_foreign_key_violation, require_text
from models import Role, User
from stores import LoanStore, UserStore


def parse_role(value: Union[Role, str]) -> Role:
    if isinstance(value, Role):
        return value
    try:
        return Role(str(value).strip().lower())
    except ValueError:
        raise ValidationError(f"Unknown role {value!r}", field="role") from None


class AdminService(AuditedService):
    def __init__(self, session_factory: SessionFactory, audit_sink: Optional[AuditSink] = None) -> None:
        self.session_factory = session_factory
        self.audit_sink = audit_sink

    def add_user(
        self,
        username: str,
        password: str,
        role: Union[Role, str] = Role.USER,
        actor: Optional[Principal] = None,
    ) -> User:
        with self._audited(actor, f"Add user {username} with role {getattr(role, 'value', role)}"):
            username = require_text(username, "username")
            password = require_text(password, "password")
            role = parse_role(role)
            with unit_of_work(self.session_factory) as session:
                try:
                    user = UserStore(session).add(username, password, role)
                except IntegrityError as exc:
                    raise AlreadyExists("User", username) from exc
        return user

    def update_credentials(
        self,
        user_id: int,
        username: str,
        password: str,
        actor: Optional[Principal] = None,
    ) -> User:
        with self._audited(actor, f"Update credentials of user {user_id}, new username {username}"):
            username = require_text(username, "username")
            password = require_text(password, "password")
            with unit_of_work(self.session_factory) as session:
                users = UserStore(session)
                try:
                    updated = users.update_credentials(user_id, username, password)
                except IntegrityError as exc:
                    raise AlreadyExists("User", username) from exc
                if updated == 0:
                    raise UserNotFound(user_id)
                user = users.get(user_id, refresh=True)
        return user

    def set_user_active(self, user_id: int, is_active: bool, actor: Optional[Principal] = None) -> User:
        with self._audited(actor, f"Set user {user_id} {'active' if is_active else 'inactive'}"):
            with unit_of_work(self.session_factory) as session:
                users = UserStore(session)
                if users.set_active(user_id, is_active) == 0:
                    raise UserNotFound(user_id)
                user = users.get(user_id, refresh=True)
        return user

    def delete_user(self, user_id: int, actor: Optional[Principal] = None) -> None:
        with self._audited(actor, f"Delete user {user_id}"):
            with unit_of_work(self.session_factory) as session:
                users, loans = UserStore(session), LoanStore(session)
                if users.get(user_id) is None:
                    raise UserNotFound(user_id)
                if loans.count_outstanding_for_user(user_id) > 0:
                    raise HasDependentRecords("user", user_id, "it has unreturned books or unpaid fines")
                try:
                    users.delete(user_id)
                except IntegrityError as exc:
                    if is_foreign_key_violation(exc):
                        raise HasDependentRecords("user", user_id) from exc
                    raise
