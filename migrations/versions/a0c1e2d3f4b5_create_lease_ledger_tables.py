"""Create lease execution, e-signature and payment ledger tables

Revision ID: a0c1e2d3f4b5
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a0c1e2d3f4b5'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


lease_status = sa.Enum(
    'DRAFT', 'PENDING_SIGNATURE', 'ACTIVE', 'EXPIRED', 'TERMINATED', name='leasestatus'
)
addendum_status = sa.Enum('DRAFT', 'SENT', 'ACTIVE', 'VOID', name='addendumstatus')
late_fee_type = sa.Enum('FLAT', 'PERCENTAGE', name='latefeetype')
document_type = sa.Enum('LEASE', 'ADDENDUM', name='documenttype')
signer_role = sa.Enum('TENANT', 'LANDLORD', name='signerrole')
payment_status = sa.Enum(
    'PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'REFUNDED', name='paymentstatus'
)
payment_method = sa.Enum('ACH', 'CARD', 'MANUAL', name='paymentmethod')
payment_method_type = sa.Enum('BANK_ACCOUNT', 'CARD', name='paymentmethodtype')


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Tenants (reference data)
    op.create_table(
        'tenants',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('organization_id', sa.Uuid(), nullable=True),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('phone', sa.String(50), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_tenants_organization_id', 'tenants', ['organization_id'])
    op.create_index('ix_tenants_email', 'tenants', ['email'])

    # Leases
    op.create_table(
        'leases',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('organization_id', sa.Uuid(), nullable=True),
        sa.Column('landlord_id', sa.Uuid(), nullable=False),
        sa.Column('landlord_name', sa.String(255), nullable=True),
        sa.Column('landlord_email', sa.String(255), nullable=True),
        sa.Column('unit_id', sa.Uuid(), nullable=True),
        sa.Column('status', lease_status, nullable=False),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('monthly_rent', sa.Numeric(12, 2), nullable=True),
        sa.Column('security_deposit', sa.Numeric(12, 2), nullable=False),
        sa.Column('late_fee_type', late_fee_type, nullable=False),
        sa.Column('late_fee_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('grace_period_days', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('rent_due_day', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('terms', sa.JSON(), nullable=True),
        sa.Column('document_url', sa.String(1000), nullable=True),
        sa.Column('document_hash', sa.String(64), nullable=True),
        sa.Column('signatures_required', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('signatures_collected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('terminated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('termination_date', sa.Date(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('rent_due_day BETWEEN 1 AND 28', name='ck_leases_rent_due_day'),
        sa.CheckConstraint('grace_period_days >= 0', name='ck_leases_grace_period'),
    )
    op.create_index('ix_leases_organization_id', 'leases', ['organization_id'])
    op.create_index('ix_leases_landlord_id', 'leases', ['landlord_id'])
    op.create_index('ix_leases_unit_id', 'leases', ['unit_id'])
    op.create_index('ix_leases_status', 'leases', ['status'])
    op.create_index('idx_leases_status_end', 'leases', ['status', 'end_date'])

    op.create_table(
        'lease_tenants',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('lease_id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_primary', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['lease_id'], ['leases.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.UniqueConstraint('lease_id', 'tenant_id', name='uq_lease_tenants_pair'),
    )
    op.create_index('ix_lease_tenants_lease_id', 'lease_tenants', ['lease_id'])
    op.create_index('ix_lease_tenants_tenant_id', 'lease_tenants', ['tenant_id'])

    op.create_table(
        'lease_addendums',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('lease_id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(200), nullable=False, server_default=''),
        sa.Column('content', sa.Text(), nullable=False, server_default=''),
        sa.Column('document_url', sa.String(1000), nullable=True),
        sa.Column('document_hash', sa.String(64), nullable=True),
        sa.Column('effective_date', sa.Date(), nullable=True),
        sa.Column('status', addendum_status, nullable=False),
        sa.Column('signatures_required', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('signatures_collected', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sent_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('voided_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['lease_id'], ['leases.id'], ondelete='CASCADE'),
    )
    op.create_index('ix_lease_addendums_lease_id', 'lease_addendums', ['lease_id'])
    op.create_index('ix_lease_addendums_status', 'lease_addendums', ['status'])

    # E-signature
    op.create_table(
        'signing_tokens',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('token', sa.String(128), nullable=False),
        sa.Column('document_type', document_type, nullable=False),
        sa.Column('document_id', sa.Uuid(), nullable=False),
        sa.Column('signer_role', signer_role, nullable=False),
        sa.Column('signer_id', sa.Uuid(), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('used_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_signing_tokens_token', 'signing_tokens', ['token'], unique=True)
    op.create_index('idx_signing_tokens_document', 'signing_tokens', ['document_type', 'document_id'])
    op.create_index(
        'idx_signing_tokens_pair', 'signing_tokens',
        ['document_type', 'document_id', 'signer_role', 'signer_id'],
    )

    op.create_table(
        'signatures',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('document_type', document_type, nullable=False),
        sa.Column('document_id', sa.Uuid(), nullable=False),
        sa.Column('signer_role', signer_role, nullable=False),
        sa.Column('signer_id', sa.Uuid(), nullable=False),
        sa.Column('signature_type', sa.String(20), nullable=False),
        sa.Column('signature_data', sa.Text(), nullable=False),
        sa.Column('signing_metadata', sa.JSON(), nullable=False),
        sa.Column('signature_hash', sa.String(64), nullable=False),
        sa.Column('signed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'document_type', 'document_id', 'signer_role', 'signer_id',
            name='uq_signatures_document_signer',
        ),
    )
    op.create_index('idx_signatures_document', 'signatures', ['document_type', 'document_id'])

    # Payment ledger
    op.create_table(
        'payment_methods',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('type', payment_method_type, nullable=False),
        sa.Column('gateway_payment_method_id', sa.String(255), nullable=True),
        sa.Column('last4', sa.String(4), nullable=True),
        sa.Column('bank_name', sa.String(255), nullable=True),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('autopay_enabled', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
    )
    op.create_index('ix_payment_methods_tenant_id', 'payment_methods', ['tenant_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('organization_id', sa.Uuid(), nullable=True),
        sa.Column('lease_id', sa.Uuid(), nullable=False),
        sa.Column('tenant_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('method', payment_method, nullable=False),
        sa.Column('payment_method_id', sa.Uuid(), nullable=True),
        sa.Column('status', payment_status, nullable=False),
        sa.Column('gateway_charge_ref', sa.String(255), nullable=True),
        sa.Column('gateway_fee', sa.Numeric(12, 2), nullable=True),
        sa.Column('net_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('fee_settled', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('refunded_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('failure_reason', sa.String(500), nullable=True),
        sa.Column('description', sa.String(500), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['lease_id'], ['leases.id']),
        sa.ForeignKeyConstraint(['tenant_id'], ['tenants.id']),
        sa.ForeignKeyConstraint(['payment_method_id'], ['payment_methods.id']),
        sa.UniqueConstraint('gateway_charge_ref'),
    )
    op.create_index('ix_payments_organization_id', 'payments', ['organization_id'])
    op.create_index('ix_payments_lease_id', 'payments', ['lease_id'])
    op.create_index('ix_payments_tenant_id', 'payments', ['tenant_id'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('idx_payments_lease_status', 'payments', ['lease_id', 'status'])

    op.create_table(
        'late_fees',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('lease_id', sa.Uuid(), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('assessed_date', sa.Date(), nullable=False),
        sa.Column('period', sa.Date(), nullable=False),
        sa.Column('waived', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('waived_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('waived_by', sa.Uuid(), nullable=True),
        sa.Column('paid_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['lease_id'], ['leases.id']),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.UniqueConstraint('lease_id', 'period', name='uq_late_fees_lease_period'),
        sa.CheckConstraint(
            'NOT (waived AND paid_date IS NOT NULL)', name='ck_late_fees_waived_or_paid'
        ),
    )
    op.create_index('ix_late_fees_lease_id', 'late_fees', ['lease_id'])

    op.create_table(
        'processed_webhook_events',
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('charge_ref', sa.String(255), nullable=True),
        sa.Column('outcome', sa.String(50), nullable=False),
        sa.Column('detail', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('event_id'),
    )
    op.create_index(
        'ix_processed_webhook_events_processed_at', 'processed_webhook_events', ['processed_at']
    )


def downgrade() -> None:
    op.drop_table('processed_webhook_events')
    op.drop_table('late_fees')
    op.drop_table('payments')
    op.drop_table('payment_methods')
    op.drop_table('signatures')
    op.drop_table('signing_tokens')
    op.drop_table('lease_addendums')
    op.drop_table('lease_tenants')
    op.drop_table('leases')
    op.drop_table('tenants')

    bind = op.get_bind()
    for enum in (
        payment_method_type, payment_method, payment_status, signer_role,
        document_type, late_fee_type, addendum_status, lease_status,
    ):
        enum.drop(bind, checkfirst=True)
