"""Create referral engine tables.

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1b2c3d4e5f6'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create codes, tracking, relationships, earnings, fraud, affiliate, achievement and audit tables."""
    # Referral codes
    op.create_table(
        'referral_codes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('owner_id', sa.String(64), nullable=False),
        sa.Column('code', sa.String(50), nullable=False),
        sa.Column('kind', sa.String(20), nullable=False, server_default='standard'),
        sa.Column('campaign_id', sa.String(64), nullable=True),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('reward_type', sa.String(20), nullable=False, server_default='percentage'),
        sa.Column('reward_value', sa.Numeric(12, 2), nullable=False, server_default='10.00'),
        sa.Column('referee_reward_type', sa.String(20), server_default='credits'),
        sa.Column('referee_reward_value', sa.Numeric(12, 2), server_default='5.00'),
        sa.Column('max_uses', sa.Integer(), nullable=True),
        sa.Column('current_uses', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('status_changed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code', name='uq_referral_codes_code'),
        sa.CheckConstraint('max_uses IS NULL OR current_uses <= max_uses', name='ck_referral_codes_uses_within_max'),
    )
    op.create_index('ix_referral_codes_owner_id', 'referral_codes', ['owner_id'])
    op.create_index('ix_referral_codes_campaign_id', 'referral_codes', ['campaign_id'])
    op.create_index('ix_referral_codes_status', 'referral_codes', ['status'])
    op.create_index('ix_referral_codes_created_at', 'referral_codes', ['created_at'])

    # Relationships (created before tracking, which points at it)
    op.create_table(
        'referral_relationships',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('referrer_id', sa.String(64), nullable=False),
        sa.Column('referee_id', sa.String(64), nullable=False),
        sa.Column('relationship_type', sa.String(20), nullable=False, server_default='direct'),
        sa.Column('level', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('referral_code_id', sa.Integer(), nullable=True),
        sa.Column('campaign_id', sa.String(64), nullable=True),
        sa.Column('tracking_id', sa.Integer(), nullable=True),
        sa.Column('total_earnings', sa.Numeric(12, 2), nullable=False, server_default='0.00'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['referral_code_id'], ['referral_codes.id']),
        sa.UniqueConstraint('referee_id', 'level', name='uq_referral_relationships_referee_level'),
    )
    op.create_index('ix_referral_relationships_referrer_id', 'referral_relationships', ['referrer_id'])
    op.create_index('ix_referral_relationships_referee_id', 'referral_relationships', ['referee_id'])
    op.create_index('ix_referral_relationships_tracking_id', 'referral_relationships', ['tracking_id'])
    op.create_index('ix_referral_relationships_created_at', 'referral_relationships', ['created_at'])

    # Tracking (clicks)
    op.create_table(
        'referral_tracking',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('referral_code_id', sa.Integer(), nullable=False),
        sa.Column('referrer_id', sa.String(64), nullable=False),
        sa.Column('click_id', sa.String(32), nullable=False),
        sa.Column('source_url', sa.String(2048), nullable=True),
        sa.Column('landing_url', sa.String(2048), nullable=True),
        sa.Column('user_agent', sa.String(512), nullable=True),
        sa.Column('ip_address', sa.String(64), nullable=True),
        sa.Column('device_fingerprint', sa.String(128), nullable=True),
        sa.Column('country', sa.String(2), nullable=True),
        sa.Column('region', sa.String(100), nullable=True),
        sa.Column('city', sa.String(100), nullable=True),
        sa.Column('session_id', sa.String(128), nullable=True),
        sa.Column('attribution_model', sa.String(20), nullable=False, server_default='last_click'),
        sa.Column('converted_user_id', sa.String(64), nullable=True),
        sa.Column('conversion_type', sa.String(30), nullable=True),
        sa.Column('conversion_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('conversion_metadata', sa.JSON(), nullable=True),
        sa.Column('converted_at', sa.DateTime(), nullable=True),
        sa.Column('relationship_id', sa.Integer(), nullable=True),
        sa.Column('earnings_recorded_at', sa.DateTime(), nullable=True),
        sa.Column('affiliate_stats_recorded_at', sa.DateTime(), nullable=True),
        sa.Column('achievements_checked_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['referral_code_id'], ['referral_codes.id']),
        sa.ForeignKeyConstraint(['relationship_id'], ['referral_relationships.id']),
        sa.UniqueConstraint('click_id', name='uq_referral_tracking_click_id'),
    )
    op.create_index('ix_referral_tracking_referral_code_id', 'referral_tracking', ['referral_code_id'])
    op.create_index('ix_referral_tracking_referrer_id', 'referral_tracking', ['referrer_id'])
    op.create_index('ix_referral_tracking_ip_address', 'referral_tracking', ['ip_address'])
    op.create_index('ix_referral_tracking_device_fingerprint', 'referral_tracking', ['device_fingerprint'])
    op.create_index('ix_referral_tracking_converted_user_id', 'referral_tracking', ['converted_user_id'])
    op.create_index('ix_referral_tracking_created_at', 'referral_tracking', ['created_at'])

    # Earnings
    op.create_table(
        'referral_earnings',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('referrer_id', sa.String(64), nullable=False),
        sa.Column('referee_id', sa.String(64), nullable=False),
        sa.Column('earning_type', sa.String(30), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('referral_code_id', sa.Integer(), nullable=True),
        sa.Column('campaign_id', sa.String(64), nullable=True),
        sa.Column('relationship_id', sa.Integer(), nullable=True),
        sa.Column('tracking_id', sa.Integer(), nullable=True),
        sa.Column('source_transaction_id', sa.String(100), nullable=True),
        sa.Column('commission_rate', sa.Numeric(7, 4), nullable=True),
        sa.Column('source_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('approved_by', sa.String(100), nullable=True),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('payout_reference', sa.String(100), nullable=True),
        sa.Column('reversed_at', sa.DateTime(), nullable=True),
        sa.Column('reversal_reason', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['referral_code_id'], ['referral_codes.id']),
        sa.ForeignKeyConstraint(['relationship_id'], ['referral_relationships.id']),
        sa.ForeignKeyConstraint(['tracking_id'], ['referral_tracking.id']),
    )
    op.create_index('ix_referral_earnings_referrer_id', 'referral_earnings', ['referrer_id'])
    op.create_index('ix_referral_earnings_tracking_id', 'referral_earnings', ['tracking_id'])
    op.create_index('ix_referral_earnings_status', 'referral_earnings', ['status'])
    op.create_index('ix_referral_earnings_created_at', 'referral_earnings', ['created_at'])

    # Fraud events
    op.create_table(
        'referral_fraud_events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('event_type', sa.String(40), nullable=False),
        sa.Column('referrer_id', sa.String(64), nullable=True),
        sa.Column('referee_id', sa.String(64), nullable=True),
        sa.Column('referral_code_id', sa.Integer(), nullable=True),
        sa.Column('tracking_id', sa.Integer(), nullable=True),
        sa.Column('detection_reason', sa.Text(), nullable=False),
        sa.Column('evidence', sa.JSON(), nullable=False),
        sa.Column('risk_score', sa.Integer(), nullable=False),
        sa.Column('severity', sa.String(10), nullable=False),
        sa.Column('automatic_action', sa.String(10), nullable=False),
        sa.Column('review_status', sa.String(20), nullable=False, server_default='open'),
        sa.Column('reviewed_by', sa.String(100), nullable=True),
        sa.Column('resolution', sa.Text(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['referral_code_id'], ['referral_codes.id']),
        sa.ForeignKeyConstraint(['tracking_id'], ['referral_tracking.id']),
    )
    op.create_index('ix_referral_fraud_events_event_type', 'referral_fraud_events', ['event_type'])
    op.create_index('ix_referral_fraud_events_referrer_id', 'referral_fraud_events', ['referrer_id'])
    op.create_index('ix_referral_fraud_events_referee_id', 'referral_fraud_events', ['referee_id'])
    op.create_index('ix_referral_fraud_events_tracking_id', 'referral_fraud_events', ['tracking_id'])
    op.create_index('ix_referral_fraud_events_review_status', 'referral_fraud_events', ['review_status'])
    op.create_index('ix_referral_fraud_events_created_at', 'referral_fraud_events', ['created_at'])

    # Affiliate profiles
    op.create_table(
        'affiliate_profiles',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('affiliate_id', sa.String(20), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending_approval'),
        sa.Column('tier', sa.String(20), nullable=False, server_default='bronze'),
        sa.Column('tier_upgraded_at', sa.DateTime(), nullable=True),
        sa.Column('tier_upgraded_by', sa.String(100), nullable=True),
        sa.Column('lifetime_conversions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('lifetime_earnings', sa.Numeric(14, 2), nullable=False, server_default='0.00'),
        sa.Column('period_conversions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('period_earnings', sa.Numeric(14, 2), nullable=False, server_default='0.00'),
        sa.Column('period_started_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('payout_threshold', sa.Numeric(10, 2), server_default='50.00'),
        sa.Column('preferred_payout_method', sa.String(20), server_default='paypal'),
        sa.Column('payout_schedule', sa.String(20), server_default='monthly'),
        sa.Column('notification_preferences', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', name='uq_affiliate_profiles_user_id'),
        sa.UniqueConstraint('affiliate_id', name='uq_affiliate_profiles_affiliate_id'),
    )

    # Achievements
    op.create_table(
        'referral_achievements',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('key', sa.String(50), nullable=False),
        sa.Column('name', sa.String(100), nullable=False),
        sa.Column('description', sa.String(500), nullable=True),
        sa.Column('achievement_type', sa.String(30), nullable=False),
        sa.Column('icon', sa.String(50), server_default='trophy'),
        sa.Column('target_progress', sa.Numeric(14, 2), nullable=False),
        sa.Column('current_progress', sa.Numeric(14, 2), nullable=False, server_default='0'),
        sa.Column('min_sample_size', sa.Integer(), server_default='0'),
        sa.Column('status', sa.String(20), nullable=False, server_default='locked'),
        sa.Column('unlocked_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('reward_type', sa.String(20), nullable=True),
        sa.Column('reward_value', sa.Numeric(10, 2), server_default='0'),
        sa.Column('reward_granted_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'key', name='uq_referral_achievements_user_key'),
    )
    op.create_index('ix_referral_achievements_user_id', 'referral_achievements', ['user_id'])
    op.create_index('ix_referral_achievements_status', 'referral_achievements', ['status'])

    # Audit log
    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor', sa.String(100), nullable=False),
        sa.Column('action', sa.String(100), nullable=False),
        sa.Column('resource_type', sa.String(50), nullable=False),
        sa.Column('resource_id', sa.String(64), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_audit_logs_action', 'audit_logs', ['action'])
    op.create_index('ix_audit_logs_created_at', 'audit_logs', ['created_at'])


def downgrade():
    """Drop referral engine tables."""
    op.drop_table('audit_logs')
    op.drop_table('referral_achievements')
    op.drop_table('affiliate_profiles')
    op.drop_table('referral_fraud_events')
    op.drop_table('referral_earnings')
    op.drop_table('referral_tracking')
    op.drop_table('referral_relationships')
    op.drop_table('referral_codes')
