from __future__ import annotations

from django.db import models
from django.db.models import Q
from django.utils import timezone


class ElectionQuerySet(models.QuerySet):
    def finalized(self) -> ElectionQuerySet:
        return self.filter(status="finalized")

    def not_finalized(self) -> ElectionQuerySet:
        return self.exclude(status="finalized")


class Election(models.Model):
    class Status(models.TextChoices):
        setup = "setup", "Setup"
        open = "open", "Open"
        closed = "closed", "Closed"
        finalized = "finalized", "Finalized"

    title = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.setup, db_index=True)
    candidate_list_locked = models.BooleanField(default=False)
    # Positions being contested; candidates must name one of these when non-empty.
    seats = models.JSONField(blank=True, default=list)
    # Off-chain cache of the ledger's vote count until the election is finalized.
    total_votes = models.PositiveIntegerField(default=0)

    contract_address = models.CharField(max_length=42, blank=True, default="")
    chain_network_id = models.BigIntegerField(blank=True, null=True)
    chain_election_id = models.PositiveBigIntegerField(
        blank=True,
        null=True,
        help_text="Numeric election id used by the voting contract. Defaults to the primary key.",
    )

    starts_at = models.DateTimeField(blank=True, null=True)
    ends_at = models.DateTimeField(blank=True, null=True)

    tally_snapshot = models.JSONField(blank=True, default=dict)
    results_hash = models.CharField(max_length=66, blank=True, default="")
    finalize_tx_hash = models.CharField(max_length=66, blank=True, default="")
    finalized_at = models.DateTimeField(blank=True, null=True)

    created_by = models.CharField(max_length=255, blank=True, default="")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = ElectionQuerySet.as_manager()

    class Meta:
        ordering = ("-created_at", "id")
        constraints = [
            models.CheckConstraint(
                condition=~Q(status="finalized") | ~Q(finalize_tx_hash=""),
                name="chk_election_finalized_has_tx_hash",
            ),
            models.CheckConstraint(
                condition=Q(candidate_list_locked=True) | Q(status="setup"),
                name="chk_election_open_requires_locked_list",
            ),
        ]

    def __str__(self) -> str:
        return self.title

    @property
    def ledger_election_id(self) -> int:
        if self.chain_election_id is not None:
            return int(self.chain_election_id)
        return int(self.pk)


class ElectionStatusEntry(models.Model):
    class Kind(models.TextChoices):
        transition = "transition", "Transition"
        reset = "reset", "Reset"

    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="status_history")
    kind = models.CharField(max_length=16, choices=Kind.choices, default=Kind.transition)
    status = models.CharField(max_length=16, choices=Election.Status.choices)
    actor = models.CharField(max_length=255, blank=True, default="")
    reason = models.TextField(blank=True, default="")
    at = models.DateTimeField(default=timezone.now)

    class Meta:
        verbose_name_plural = "Election status entries"
        ordering = ("at", "id")
        constraints = [
            models.CheckConstraint(
                condition=~Q(kind="reset") | ~Q(reason=""),
                name="chk_status_entry_reset_has_reason",
            ),
        ]
        indexes = [
            models.Index(fields=["election", "at"], name="status_el_at"),
        ]

    def __str__(self) -> str:
        return f"{self.election_id}:{self.kind}:{self.status}"


class Candidate(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="candidates")
    name = models.CharField(max_length=255)
    seat = models.CharField(max_length=255, blank=True, default="")
    votes = models.PositiveIntegerField(default=0)
    chain_candidate_id = models.PositiveBigIntegerField(
        blank=True,
        null=True,
        help_text="Candidate id used by the voting contract. Defaults to the primary key.",
    )
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("id",)
        constraints = [
            models.UniqueConstraint(
                fields=["election", "seat", "name"],
                name="uniq_candidate_election_seat_name",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.name} ({self.election_id})"

    @property
    def ledger_candidate_id(self) -> int:
        if self.chain_candidate_id is not None:
            return int(self.chain_candidate_id)
        return int(self.pk)


class ContractDeployment(models.Model):
    class Source(models.TextChoices):
        deployed = "deployed", "Deployed"
        adopted = "adopted", "Adopted from artifact"

    address = models.CharField(max_length=42)
    abi = models.JSONField(blank=True, default=list)
    network_id = models.BigIntegerField(db_index=True)
    tx_hash = models.CharField(max_length=66, blank=True, default="")
    rpc = models.CharField(max_length=2048, blank=True, default="")
    source = models.CharField(max_length=16, choices=Source.choices, default=Source.deployed)
    deployed_at = models.DateTimeField(default=timezone.now)
    verified_at = models.DateTimeField(blank=True, null=True)
    # Superseded rows are kept for audit; only one row per network may be live.
    is_live = models.BooleanField(default=True)
    superseded_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ("-deployed_at", "-id")
        constraints = [
            models.UniqueConstraint(
                fields=["network_id"],
                condition=Q(is_live=True),
                name="uniq_live_deployment_per_network",
            ),
        ]

    def __str__(self) -> str:
        return f"{self.network_id}:{self.address}"


class ContractDeploymentLock(models.Model):
    """One row per network; locked with select_for_update around ensure_deployed."""

    network_id = models.BigIntegerField(unique=True)

    def __str__(self) -> str:
        return f"deployment-lock:{self.network_id}"


class PendingChainOperation(models.Model):
    class Operation(models.TextChoices):
        deploy = "deploy", "Deploy contract"
        finalize = "finalize", "Finalize election"

    operation = models.CharField(max_length=16, choices=Operation.choices)
    idempotency_key = models.CharField(max_length=255, unique=True)
    network_id = models.BigIntegerField(blank=True, null=True)
    election = models.ForeignKey(
        Election,
        on_delete=models.CASCADE,
        blank=True,
        null=True,
        related_name="pending_chain_operations",
    )
    # Empty until the node has accepted the transaction.
    tx_hash = models.CharField(max_length=66, blank=True, default="")
    payload = models.JSONField(blank=True, default=dict)
    created_at = models.DateTimeField(auto_now_add=True)
    submitted_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ("created_at", "id")

    def __str__(self) -> str:
        return f"{self.operation}:{self.idempotency_key}"


class ResetConfirmationCode(models.Model):
    election = models.ForeignKey(Election, on_delete=models.CASCADE, related_name="reset_codes")
    code_hash = models.CharField(max_length=255)
    issued_by = models.CharField(max_length=255)
    issued_at = models.DateTimeField(auto_now_add=True)
    expires_at = models.DateTimeField()
    used_at = models.DateTimeField(blank=True, null=True)

    class Meta:
        ordering = ("-issued_at", "-id")

    def __str__(self) -> str:
        return f"reset-code:{self.election_id}:{self.pk}"


class AdminAction(models.Model):
    class ActionType(models.TextChoices):
        status_change = "status_change", "Status change"
        finalize = "finalize", "Finalize"
        reset = "reset", "Reset"
        clear_votes = "clear_votes", "Clear votes"
        lock_candidates = "lock_candidates", "Lock candidate list"
        issue_reset_code = "issue_reset_code", "Issue reset code"

    class Outcome(models.TextChoices):
        succeeded = "succeeded", "Succeeded"
        denied = "denied", "Denied"
        failed = "failed", "Failed"

    election = models.ForeignKey(
        Election,
        on_delete=models.SET_NULL,
        blank=True,
        null=True,
        related_name="admin_actions",
    )
    action_type = models.CharField(max_length=32, choices=ActionType.choices)
    actor = models.CharField(max_length=255, blank=True, default="")
    # Names of the factors presented (e.g. "password"), never their values.
    proofs_supplied = models.JSONField(blank=True, default=list)
    outcome = models.CharField(max_length=16, choices=Outcome.choices)
    payload = models.JSONField(blank=True, default=dict)
    timestamp = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ("timestamp", "id")
        indexes = [
            models.Index(fields=["election", "timestamp"], name="adminaction_el_ts"),
            models.Index(fields=["actor", "timestamp"], name="adminaction_actor_ts"),
        ]

    def __str__(self) -> str:
        return f"{self.action_type}:{self.outcome}:{self.election_id}"
