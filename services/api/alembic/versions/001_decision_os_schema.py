"""decision os schema

Revision ID: 001_decision_os
Revises:
Create Date: 2026-02-02 09:00:00

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001_decision_os'
down_revision = None
branch_labels = None
depends_on = None

APPEND_ONLY_TABLES = ('decision_events', 'drm_events', 'taste_signals')


def upgrade():
    op.create_table('households',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('key', sa.String(length=80), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_households'),
        sa.UniqueConstraint('key', name='uq_households_key'),
    )

    op.create_table('meals',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('canonical_key', sa.String(length=120), nullable=False),
        sa.Column('name', sa.String(length=200), nullable=False),
        sa.Column('instructions_short', sa.Text(), nullable=False),
        sa.Column('est_minutes', sa.Integer(), nullable=False),
        sa.Column('est_cost_band', sa.String(length=10), nullable=False),
        sa.Column('difficulty', sa.String(length=20), nullable=True),
        sa.Column('mode', sa.String(length=20), nullable=True),
        sa.Column('tags', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_meals'),
        sa.UniqueConstraint('canonical_key', name='uq_meals_canonical_key'),
    )

    op.create_table('meal_ingredients',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('meal_id', sa.String(length=36), nullable=False),
        sa.Column('ingredient_name', sa.String(length=200), nullable=False),
        sa.Column('qty_text', sa.String(length=50), nullable=True),
        sa.Column('is_pantry_staple', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.ForeignKeyConstraint(['meal_id'], ['meals.id'], ondelete='CASCADE', name='fk_meal_ingredients_meal_id_meals'),
        sa.PrimaryKeyConstraint('id', name='pk_meal_ingredients'),
    )
    op.create_index('ix_meal_ingredients_meal_id', 'meal_ingredients', ['meal_id'])

    op.create_table('inventory_items',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('household_key', sa.String(length=80), nullable=False),
        sa.Column('item_name', sa.String(length=200), nullable=False),
        sa.Column('qty_estimated', sa.Float(), nullable=True),
        sa.Column('qty_used_estimated', sa.Float(), nullable=False),
        sa.Column('unit', sa.String(length=20), nullable=True),
        sa.Column('confidence', sa.Float(), nullable=False),
        sa.Column('source', sa.String(length=20), nullable=False),
        sa.Column('decay_rate_per_day', sa.Float(), nullable=True),
        sa.Column('last_seen_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('last_used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_inventory_items'),
        sa.UniqueConstraint('household_key', 'item_name', name='uq_inventory_items_household_item'),
    )
    op.create_index('ix_inventory_items_household_key', 'inventory_items', ['household_key'])

    op.create_table('decision_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('household_key', sa.String(length=80), nullable=False),
        sa.Column('decided_at', sa.String(length=40), nullable=False),
        sa.Column('actioned_at', sa.String(length=40), nullable=True),
        sa.Column('decision_type', sa.String(length=20), nullable=False),
        sa.Column('meal_id', sa.String(length=36), nullable=True),
        sa.Column('external_vendor_key', sa.String(length=80), nullable=True),
        sa.Column('context_hash', sa.String(length=64), nullable=False),
        sa.Column('decision_payload', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('user_action', sa.String(length=20), nullable=False),
        sa.Column('is_feedback_copy', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('original_event_id', sa.String(length=36), nullable=True),
        sa.Column('is_autopilot', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('notes', sa.String(length=40), nullable=True),
        sa.Column('dedupe_key', sa.String(length=120), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.CheckConstraint('NOT (meal_id IS NOT NULL AND external_vendor_key IS NOT NULL)', name='ck_decision_events_meal_xor_vendor'),
        sa.CheckConstraint("user_action IN ('pending', 'approved', 'rejected', 'expired', 'drm_triggered')", name='ck_decision_events_user_action_enum'),
        sa.CheckConstraint("decision_type IN ('cook', 'order', 'zero_cook')", name='ck_decision_events_decision_type_enum'),
        sa.PrimaryKeyConstraint('id', name='pk_decision_events'),
        sa.UniqueConstraint('dedupe_key', name='uq_decision_events_dedupe_key'),
    )
    op.create_index('ix_decision_events_household_created', 'decision_events', ['household_key', sa.text('created_at DESC')])
    op.create_index('ix_decision_events_original_event_id', 'decision_events', ['original_event_id'])
    op.create_index('ix_decision_events_context_hash', 'decision_events', ['household_key', 'context_hash'])

    op.create_table('drm_events',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('household_key', sa.String(length=80), nullable=False),
        sa.Column('triggered_at', sa.String(length=40), nullable=False),
        sa.Column('trigger_type', sa.String(length=20), nullable=False),
        sa.Column('trigger_reason', sa.String(length=40), nullable=False),
        sa.Column('rescue_type', sa.String(length=20), nullable=True),
        sa.Column('rescue_payload', postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column('exhausted', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('id', name='pk_drm_events'),
    )
    op.create_index('ix_drm_events_household_triggered', 'drm_events', ['household_key', 'triggered_at'])

    op.create_table('taste_signals',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('household_key', sa.String(length=80), nullable=False),
        sa.Column('decided_at', sa.String(length=40), nullable=False),
        sa.Column('actioned_at', sa.String(length=40), nullable=True),
        sa.Column('decision_event_id', sa.String(length=36), nullable=False),
        sa.Column('meal_id', sa.String(length=36), nullable=True),
        sa.Column('decision_type', sa.String(length=20), nullable=False),
        sa.Column('user_action', sa.String(length=20), nullable=False),
        sa.Column('is_undo', sa.Boolean(), server_default=sa.false(), nullable=False),
        sa.Column('context_hash', sa.String(length=64), nullable=True),
        sa.Column('features', postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column('weight', sa.Float(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.CheckConstraint('weight >= -2.0 AND weight <= 2.0', name='ck_taste_signals_weight_range'),
        sa.PrimaryKeyConstraint('id', name='pk_taste_signals'),
    )
    op.create_index('ix_taste_signals_household_meal', 'taste_signals', ['household_key', 'meal_id'])

    op.create_table('taste_meal_scores',
        sa.Column('household_key', sa.String(length=80), nullable=False),
        sa.Column('meal_id', sa.String(length=36), nullable=False),
        sa.Column('score', sa.Float(), nullable=False),
        sa.Column('approvals', sa.Integer(), nullable=False),
        sa.Column('rejections', sa.Integer(), nullable=False),
        sa.Column('last_seen_at', sa.String(length=40), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=True),
        sa.PrimaryKeyConstraint('household_key', 'meal_id', name='pk_taste_meal_scores'),
    )

    # Append-only: reject UPDATE/DELETE at the database as well as in the ORM
    op.execute("""
        CREATE OR REPLACE FUNCTION reject_append_only_change() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION '% is append-only; % rejected', TG_TABLE_NAME, TG_OP;
        END;
        $$ LANGUAGE plpgsql;
    """)
    for table in APPEND_ONLY_TABLES:
        op.execute(f"""
            CREATE TRIGGER {table}_append_only
            BEFORE UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION reject_append_only_change();
        """)


def downgrade():
    for table in APPEND_ONLY_TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_append_only ON {table}")
    op.execute("DROP FUNCTION IF EXISTS reject_append_only_change()")

    op.drop_table('taste_meal_scores')
    op.drop_index('ix_taste_signals_household_meal', table_name='taste_signals')
    op.drop_table('taste_signals')
    op.drop_index('ix_drm_events_household_triggered', table_name='drm_events')
    op.drop_table('drm_events')
    op.drop_index('ix_decision_events_context_hash', table_name='decision_events')
    op.drop_index('ix_decision_events_original_event_id', table_name='decision_events')
    op.drop_index('ix_decision_events_household_created', table_name='decision_events')
    op.drop_table('decision_events')
    op.drop_index('ix_inventory_items_household_key', table_name='inventory_items')
    op.drop_table('inventory_items')
    op.drop_index('ix_meal_ingredients_meal_id', table_name='meal_ingredients')
    op.drop_table('meal_ingredients')
    op.drop_table('meals')
    op.drop_table('households')
