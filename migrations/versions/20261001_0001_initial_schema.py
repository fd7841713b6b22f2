from __future__ import annotations
from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None

def _ts(name: str, nullable: bool = False, now: bool = False) -> sa.Column:
    return sa.Column(
        name, sa.TIMESTAMP(timezone=True), nullable=nullable,
        server_default=sa.text("now()") if now else None,
    )

def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=80), nullable=False),
        sa.Column("pin_hash", sa.String(length=255), nullable=False),
        _ts("created_at", now=True),
        _ts("last_login_at", nullable=True),
    )
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "competitions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("organizer_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("number_of_weeks", sa.Integer(), nullable=False),
        sa.Column("timezone", sa.String(length=64), nullable=False, server_default="UTC"),
        sa.Column("buy_in_amount", sa.Numeric(10, 2), nullable=False, server_default="0"),
        sa.Column("weekly_prize_percent", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("grand_prize_percent", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("token_champ_prize_percent", sa.Numeric(5, 2), nullable=False, server_default="0"),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="ACTIVE"),
        _ts("created_at", now=True),
    )
    op.create_index("ix_competitions_organizer_id", "competitions", ["organizer_id"])

    op.create_table(
        "participants",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("competition_id", sa.Uuid(), sa.ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("buy_in_paid", sa.Boolean(), nullable=False, server_default=sa.false()),
        _ts("joined_at", now=True),
        sa.UniqueConstraint("competition_id", "user_id", name="uq_participant_unique"),
    )
    op.create_index("ix_participants_competition_id", "participants", ["competition_id"])
    op.create_index("ix_participants_user_id", "participants", ["user_id"])

    op.create_table(
        "weeks",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("competition_id", sa.Uuid(), sa.ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("week_index", sa.Integer(), nullable=False),
        _ts("start_at"),
        _ts("end_at"),
        sa.Column("status", sa.String(length=16), nullable=False),
        _ts("locked_at", nullable=True),
        sa.UniqueConstraint("competition_id", "week_index", name="uq_week_index"),
    )
    op.create_index("ix_weeks_competition_id", "weeks", ["competition_id"])
    op.create_index("ix_weeks_status", "weeks", ["status"])

    op.create_table(
        "task_templates",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("competition_id", sa.Uuid(), sa.ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("points", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("display_order", sa.Integer(), nullable=False, server_default="0"),
        _ts("created_at", now=True),
    )
    op.create_index("ix_task_templates_competition_id", "task_templates", ["competition_id"])

    op.create_table(
        "completions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("competition_id", sa.Uuid(), sa.ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("week_id", sa.Uuid(), sa.ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("task_template_id", sa.Uuid(), sa.ForeignKey("task_templates.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        _ts("completed_at", now=True),
        sa.Column("source", sa.String(length=16), nullable=False, server_default="PARTICIPANT"),
        sa.Column("edited_by_user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        _ts("edited_at", nullable=True),
        sa.Column("note", sa.String(length=500), nullable=True),
        sa.UniqueConstraint("week_id", "task_template_id", "user_id", name="uq_completion_once"),
    )
    for col in ("competition_id", "week_id", "task_template_id", "user_id"):
        op.create_index(f"ix_completions_{col}", "completions", [col])

    op.create_table(
        "token_ledger",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("competition_id", sa.Uuid(), sa.ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("week_id", sa.Uuid(), sa.ForeignKey("weeks.id", ondelete="SET NULL"), nullable=True),
        sa.Column("delta", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(length=32), nullable=False),
        sa.Column("related_entity_id", sa.Uuid(), nullable=True),
        _ts("created_at", now=True),
        sa.CheckConstraint(
            "(reason = 'SIDE_CHALLENGE_STAKE' AND delta < 0) OR (reason <> 'SIDE_CHALLENGE_STAKE' AND delta > 0)",
            name="ck_token_ledger_delta_sign",
        ),
    )
    for col in ("competition_id", "user_id", "week_id", "related_entity_id"):
        op.create_index(f"ix_token_ledger_{col}", "token_ledger", [col])
    op.create_index("ix_token_ledger_competition_user", "token_ledger", ["competition_id", "user_id"])
    op.create_index(
        "uq_token_ledger_perfect_week", "token_ledger", ["competition_id", "week_id", "user_id"],
        unique=True,
        postgresql_where=sa.text("reason = 'PERFECT_WEEK_EARNED'"),
        sqlite_where=sa.text("reason = 'PERFECT_WEEK_EARNED'"),
    )

    op.create_table(
        "side_challenges",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("competition_id", sa.Uuid(), sa.ForeignKey("competitions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("week_id", sa.Uuid(), sa.ForeignKey("weeks.id", ondelete="CASCADE"), nullable=False),
        sa.Column("created_by_user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("opponent_user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("title", sa.String(length=120), nullable=False),
        sa.Column("rules", sa.Text(), nullable=False),
        sa.Column("metric_type", sa.String(length=24), nullable=False),
        sa.Column("unit", sa.String(length=32), nullable=False),
        sa.Column("target_value", sa.Numeric(14, 4), nullable=True),
        sa.Column("stake_tokens", sa.Integer(), nullable=False),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="PROPOSED"),
        _ts("created_at", now=True),
        _ts("accepted_at", nullable=True),
        _ts("expires_at"),
        _ts("resolved_at", nullable=True),
        sa.Column("winner_user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("resolution_note", sa.Text(), nullable=True),
        sa.CheckConstraint("stake_tokens > 0", name="ck_side_challenge_stake_positive"),
        sa.CheckConstraint("created_by_user_id <> opponent_user_id", name="ck_side_challenge_not_self"),
    )
    for col in ("competition_id", "week_id", "created_by_user_id", "opponent_user_id", "status"):
        op.create_index(f"ix_side_challenges_{col}", "side_challenges", [col])

    op.create_table(
        "side_challenge_submissions",
        sa.Column("id", sa.Uuid(), primary_key=True, nullable=False),
        sa.Column("side_challenge_id", sa.Uuid(), sa.ForeignKey("side_challenges.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Uuid(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("value_number", sa.Numeric(14, 4), nullable=False),
        sa.Column("value_display", sa.String(length=120), nullable=False),
        sa.Column("note", sa.Text(), nullable=True),
        _ts("submitted_at", now=True),
        sa.UniqueConstraint("side_challenge_id", "user_id", name="uq_side_challenge_submission_once"),
    )
    op.create_index("ix_side_challenge_submissions_side_challenge_id", "side_challenge_submissions", ["side_challenge_id"])
    op.create_index("ix_side_challenge_submissions_user_id", "side_challenge_submissions", ["user_id"])

def downgrade() -> None:
    # indexes go with their tables
    for table in (
        "side_challenge_submissions", "side_challenges", "token_ledger", "completions",
        "task_templates", "weeks", "participants", "competitions", "users",
    ):
        op.drop_table(table)
