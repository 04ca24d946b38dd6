"""Per-action re-authorization for irreversible election operations.

A logged-in session is not enough to change an election: every gated call
carries the acting admin's password again, and a reset additionally needs a
one-time confirmation code plus the literal confirmation phrase.
"""

import datetime
import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass

from django.conf import settings
from django.contrib.auth import authenticate
from django.contrib.auth.hashers import check_password, make_password
from django.contrib.auth.models import AbstractBaseUser
from django.db import transaction
from django.utils import timezone
from django.utils.crypto import constant_time_compare, get_random_string

from chainvote.exceptions import AuthenticationFailed, ConfirmationMismatch, RateLimited
from chainvote.models import AdminAction, Election, ResetConfirmationCode
from chainvote.rate_limit import allow_request, limit_reached

logger = logging.getLogger(__name__)

REAUTH_RATE_LIMIT_SCOPE = "elections.admin_reauth"

# No 0/O/1/I/L so codes survive being read aloud.
_RESET_CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
_RESET_CODE_LENGTH = 10


@dataclass(frozen=True, slots=True)
class AdminProofs:
    password: str = ""
    confirmation_code: str = ""
    confirmation_phrase: str = ""

    def supplied(self) -> list[str]:
        names: list[str] = []
        if self.password:
            names.append("password")
        if self.confirmation_code:
            names.append("confirmation_code")
        if self.confirmation_phrase:
            names.append("confirmation_phrase")
        return names


def actor_name(user: AbstractBaseUser | None) -> str:
    if user is None:
        return ""
    return str(user.get_username())


def record_admin_action(
    *,
    election: Election | None,
    action_type: str,
    actor: str,
    outcome: str,
    proofs: Iterable[str] = (),
    payload: Mapping[str, object] | None = None,
) -> AdminAction | None:
    # Separate atomic block so a failure here never masks the caller's error.
    try:
        with transaction.atomic():
            return AdminAction.objects.create(
                election=election,
                action_type=action_type,
                actor=actor,
                outcome=outcome,
                proofs_supplied=list(proofs),
                payload=dict(payload or {}),
            )
    except Exception:
        logger.exception("Failed to write admin audit record action=%s actor=%s", action_type, actor)
        return None


def _emit_denial_log(*, actor: str, action_type: str, election: Election | None, reason: str) -> None:
    logger.warning(
        "Admin re-authorization denied",
        extra={
            "event": "chainvote.security.reauth.denied",
            "component": "elections",
            "outcome": "denied",
            "actor": actor,
            "action_type": action_type,
            "election_id": election.pk if election is not None else None,
            "reason": reason,
        },
    )


def _code_is_live(code: ResetConfirmationCode, *, now: datetime.datetime) -> bool:
    return code.used_at is None and code.expires_at > now


def issue_reset_confirmation_code(*, election: Election, issued_by: str) -> str:
    """Create a fresh code for this election and return it in plain text, once.

    Outstanding codes for the election stop working.
    """
    now = timezone.now()
    code = get_random_string(_RESET_CODE_LENGTH, allowed_chars=_RESET_CODE_ALPHABET)
    with transaction.atomic():
        ResetConfirmationCode.objects.filter(election=election, used_at__isnull=True).update(used_at=now)
        ResetConfirmationCode.objects.create(
            election=election,
            code_hash=make_password(code),
            issued_by=issued_by,
            expires_at=now + datetime.timedelta(seconds=settings.ELECTION_RESET_CODE_TTL_SECONDS),
        )
    logger.info("Reset confirmation code issued for election %s by %s", election.pk, issued_by)
    return code


def _find_reset_code(election: Election, supplied: str) -> ResetConfirmationCode | None:
    supplied = str(supplied or "").strip().upper()
    if not supplied:
        return None
    now = timezone.now()
    for row in ResetConfirmationCode.objects.filter(election=election, used_at__isnull=True, expires_at__gt=now):
        if check_password(supplied, row.code_hash):
            return row
    return None


def consume_reset_code(code_id: int) -> None:
    """Mark a verified code used. Call inside the reset's transaction."""
    now = timezone.now()
    row = ResetConfirmationCode.objects.select_for_update().filter(pk=code_id).first()
    if row is None or not _code_is_live(row, now=now):
        raise ConfirmationMismatch()
    row.used_at = now
    row.save(update_fields=["used_at"])


class AdminAuthorizationGate:
    def __init__(self, *, actor: AbstractBaseUser) -> None:
        self.actor = actor
        self.actor_name = actor_name(actor)

    def _rate_key(self) -> list[str]:
        return [self.actor_name]

    def _deny(
        self,
        *,
        election: Election | None,
        action_type: str,
        proofs: AdminProofs,
        reason: str,
        count_failure: bool = True,
    ) -> None:
        if count_failure:
            allow_request(
                scope=REAUTH_RATE_LIMIT_SCOPE,
                key_parts=self._rate_key(),
                limit=settings.ELECTION_ADMIN_REAUTH_RATE_LIMIT,
                window_seconds=settings.ELECTION_ADMIN_REAUTH_RATE_LIMIT_WINDOW_SECONDS,
            )
        # The reason is for operators; callers only see the generic error.
        record_admin_action(
            election=election,
            action_type=action_type,
            actor=self.actor_name,
            outcome=AdminAction.Outcome.denied,
            proofs=proofs.supplied(),
            payload={"reason": reason},
        )
        _emit_denial_log(actor=self.actor_name, action_type=action_type, election=election, reason=reason)

    def _check_password(self, password: str) -> bool:
        if not password or not self.actor_name:
            return False
        user = authenticate(username=self.actor_name, password=password)
        if user is None or user.pk != self.actor.pk:
            return False
        return bool(getattr(user, "is_active", False) and getattr(user, "is_staff", False))

    def authorize(self, *, election: Election | None, action_type: str, proofs: AdminProofs) -> None:
        """Verify the actor's password for one action. Raises without mutating anything."""
        if limit_reached(
            scope=REAUTH_RATE_LIMIT_SCOPE,
            key_parts=self._rate_key(),
            limit=settings.ELECTION_ADMIN_REAUTH_RATE_LIMIT,
        ):
            self._deny(
                election=election,
                action_type=action_type,
                proofs=proofs,
                reason="rate_limited",
                count_failure=False,
            )
            raise RateLimited()

        if not self._check_password(proofs.password):
            self._deny(election=election, action_type=action_type, proofs=proofs, reason="password")
            raise AuthenticationFailed()

    def authorize_reset(self, *, election: Election, proofs: AdminProofs) -> int:
        """Verify every reset factor and return the id of the matching confirmation code."""
        action_type = AdminAction.ActionType.reset
        self.authorize(election=election, action_type=action_type, proofs=proofs)

        phrase_ok = constant_time_compare(
            str(proofs.confirmation_phrase or ""),
            settings.ELECTION_RESET_CONFIRM_PHRASE,
        )
        code = _find_reset_code(election, proofs.confirmation_code)
        if not phrase_ok or code is None:
            reason = "confirmation_phrase" if not phrase_ok else "confirmation_code"
            self._deny(election=election, action_type=action_type, proofs=proofs, reason=reason)
            raise ConfirmationMismatch()
        return code.pk
