import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Election",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("title", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("setup", "Setup"),
                            ("open", "Open"),
                            ("closed", "Closed"),
                            ("finalized", "Finalized"),
                        ],
                        db_index=True,
                        default="setup",
                        max_length=16,
                    ),
                ),
                ("candidate_list_locked", models.BooleanField(default=False)),
                ("seats", models.JSONField(blank=True, default=list)),
                ("total_votes", models.PositiveIntegerField(default=0)),
                ("contract_address", models.CharField(blank=True, default="", max_length=42)),
                ("chain_network_id", models.BigIntegerField(blank=True, null=True)),
                (
                    "chain_election_id",
                    models.PositiveBigIntegerField(
                        blank=True,
                        help_text="Numeric election id used by the voting contract. Defaults to the primary key.",
                        null=True,
                    ),
                ),
                ("starts_at", models.DateTimeField(blank=True, null=True)),
                ("ends_at", models.DateTimeField(blank=True, null=True)),
                ("tally_snapshot", models.JSONField(blank=True, default=dict)),
                ("results_hash", models.CharField(blank=True, default="", max_length=66)),
                ("finalize_tx_hash", models.CharField(blank=True, default="", max_length=66)),
                ("finalized_at", models.DateTimeField(blank=True, null=True)),
                ("created_by", models.CharField(blank=True, default="", max_length=255)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ("-created_at", "id"),
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("status", "finalized"), _negated=True)
                        | models.Q(("finalize_tx_hash", ""), _negated=True),
                        name="chk_election_finalized_has_tx_hash",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("candidate_list_locked", True), ("status", "setup"), _connector="OR"),
                        name="chk_election_open_requires_locked_list",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ContractDeployment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("address", models.CharField(max_length=42)),
                ("abi", models.JSONField(blank=True, default=list)),
                ("network_id", models.BigIntegerField(db_index=True)),
                ("tx_hash", models.CharField(blank=True, default="", max_length=66)),
                ("rpc", models.CharField(blank=True, default="", max_length=2048)),
                (
                    "source",
                    models.CharField(
                        choices=[("deployed", "Deployed"), ("adopted", "Adopted from artifact")],
                        default="deployed",
                        max_length=16,
                    ),
                ),
                ("deployed_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("verified_at", models.DateTimeField(blank=True, null=True)),
                ("is_live", models.BooleanField(default=True)),
                ("superseded_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "ordering": ("-deployed_at", "-id"),
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("is_live", True)),
                        fields=("network_id",),
                        name="uniq_live_deployment_per_network",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ContractDeploymentLock",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("network_id", models.BigIntegerField(unique=True)),
            ],
        ),
        migrations.CreateModel(
            name="Candidate",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("name", models.CharField(max_length=255)),
                ("seat", models.CharField(blank=True, default="", max_length=255)),
                ("votes", models.PositiveIntegerField(default=0)),
                (
                    "chain_candidate_id",
                    models.PositiveBigIntegerField(
                        blank=True,
                        help_text="Candidate id used by the voting contract. Defaults to the primary key.",
                        null=True,
                    ),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="candidates",
                        to="chainvote.election",
                    ),
                ),
            ],
            options={
                "ordering": ("id",),
                "constraints": [
                    models.UniqueConstraint(
                        fields=("election", "seat", "name"),
                        name="uniq_candidate_election_seat_name",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="ElectionStatusEntry",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "kind",
                    models.CharField(
                        choices=[("transition", "Transition"), ("reset", "Reset")],
                        default="transition",
                        max_length=16,
                    ),
                ),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("setup", "Setup"),
                            ("open", "Open"),
                            ("closed", "Closed"),
                            ("finalized", "Finalized"),
                        ],
                        max_length=16,
                    ),
                ),
                ("actor", models.CharField(blank=True, default="", max_length=255)),
                ("reason", models.TextField(blank=True, default="")),
                ("at", models.DateTimeField(default=django.utils.timezone.now)),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="status_history",
                        to="chainvote.election",
                    ),
                ),
            ],
            options={
                "verbose_name_plural": "Election status entries",
                "ordering": ("at", "id"),
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("kind", "reset"), _negated=True)
                        | models.Q(("reason", ""), _negated=True),
                        name="chk_status_entry_reset_has_reason",
                    ),
                ],
                "indexes": [
                    models.Index(fields=["election", "at"], name="status_el_at"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PendingChainOperation",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "operation",
                    models.CharField(
                        choices=[("deploy", "Deploy contract"), ("finalize", "Finalize election")],
                        max_length=16,
                    ),
                ),
                ("idempotency_key", models.CharField(max_length=255, unique=True)),
                ("network_id", models.BigIntegerField(blank=True, null=True)),
                ("tx_hash", models.CharField(blank=True, default="", max_length=66)),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("submitted_at", models.DateTimeField(blank=True, null=True)),
                (
                    "election",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="pending_chain_operations",
                        to="chainvote.election",
                    ),
                ),
            ],
            options={
                "ordering": ("created_at", "id"),
            },
        ),
        migrations.CreateModel(
            name="ResetConfirmationCode",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("code_hash", models.CharField(max_length=255)),
                ("issued_by", models.CharField(max_length=255)),
                ("issued_at", models.DateTimeField(auto_now_add=True)),
                ("expires_at", models.DateTimeField()),
                ("used_at", models.DateTimeField(blank=True, null=True)),
                (
                    "election",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="reset_codes",
                        to="chainvote.election",
                    ),
                ),
            ],
            options={
                "ordering": ("-issued_at", "-id"),
            },
        ),
        migrations.CreateModel(
            name="AdminAction",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                (
                    "action_type",
                    models.CharField(
                        choices=[
                            ("status_change", "Status change"),
                            ("finalize", "Finalize"),
                            ("reset", "Reset"),
                            ("clear_votes", "Clear votes"),
                            ("lock_candidates", "Lock candidate list"),
                            ("issue_reset_code", "Issue reset code"),
                        ],
                        max_length=32,
                    ),
                ),
                ("actor", models.CharField(blank=True, default="", max_length=255)),
                ("proofs_supplied", models.JSONField(blank=True, default=list)),
                (
                    "outcome",
                    models.CharField(
                        choices=[("succeeded", "Succeeded"), ("denied", "Denied"), ("failed", "Failed")],
                        max_length=16,
                    ),
                ),
                ("payload", models.JSONField(blank=True, default=dict)),
                ("timestamp", models.DateTimeField(auto_now_add=True)),
                (
                    "election",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="admin_actions",
                        to="chainvote.election",
                    ),
                ),
            ],
            options={
                "ordering": ("timestamp", "id"),
                "indexes": [
                    models.Index(fields=["election", "timestamp"], name="adminaction_el_ts"),
                    models.Index(fields=["actor", "timestamp"], name="adminaction_actor_ts"),
                ],
            },
        ),
    ]
