"""Billing schema

Revision ID: 001
Revises:
Create Date: 2026-10-16 00:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None

bill_payment_status = sa.Enum('PENDING', 'PARTIAL', 'PAID', name='billpaymentstatus')
discount_type = sa.Enum('FIXED', 'PERCENTAGE', name='discounttype')
item_type = sa.Enum('APPOINTMENT', 'LAB_TEST', 'PHARMACY', 'DEPARTMENT_SERVICE', 'MANUAL', name='itemtype')
item_category = sa.Enum(
    'MEDICAL', 'LABORATORY', 'PHARMACY', 'PROCEDURE', 'SERVICE', 'OTHER', name='itemcategory'
)
payment_method = sa.Enum(
    'CASH', 'CREDIT_CARD', 'DEBIT_CARD', 'CHECK', 'BANK_TRANSFER', 'MOBILE_MONEY', 'ONLINE', 'INSURANCE',
    name='paymentmethod'
)
# bill_refunds reuses the type created with the payments table
payment_method_existing = payment_method.with_variant(
    postgresql.ENUM(name='paymentmethod', create_type=False), 'postgresql'
)
payment_status = sa.Enum('PENDING', 'COMPLETED', 'FAILED', 'REFUNDED', 'VOIDED', name='paymentstatus')
refund_type = sa.Enum('FULL', 'PARTIAL', name='refundtype')
refund_status = sa.Enum('PENDING', 'COMPLETED', 'REJECTED', name='refundstatus')
setting_data_type = sa.Enum('STRING', 'INTEGER', 'DECIMAL', 'BOOLEAN', 'JSON', name='settingdatatype')
claim_status = sa.Enum(
    'DRAFT', 'SUBMITTED', 'PENDING', 'APPROVED', 'PARTIALLY_APPROVED', 'REJECTED', 'APPEALED', 'CLOSED',
    name='claimstatus'
)
audit_action = sa.Enum('CREATE', 'UPDATE', 'DELETE', 'PAYMENT', 'REFUND', 'VOID', 'CLAIM', name='auditaction')
audit_severity = sa.Enum('LOW', 'MEDIUM', 'HIGH', name='auditseverity')


def upgrade() -> None:
    # Insurance providers and policies
    op.create_table(
        'insurance_providers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('code', sa.String(length=50), nullable=False),
        sa.Column('contact_number', sa.String(length=50), nullable=True),
        sa.Column('email', sa.String(length=255), nullable=True),
        sa.Column('max_coverage_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('code')
    )

    op.create_table(
        'patient_insurances',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('patient_id', sa.Uuid(), nullable=False),
        sa.Column('provider_id', sa.Uuid(), nullable=False),
        sa.Column('policy_number', sa.String(length=100), nullable=False),
        sa.Column('policy_holder_name', sa.String(length=255), nullable=True),
        sa.Column('relationship_to_patient', sa.String(length=50), nullable=False),
        sa.Column('coverage_start_date', sa.Date(), nullable=False),
        sa.Column('coverage_end_date', sa.Date(), nullable=True),
        sa.Column('co_pay_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('co_pay_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('deductible_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('deductible_met', sa.Numeric(12, 2), nullable=False),
        sa.Column('annual_max_coverage', sa.Numeric(12, 2), nullable=True),
        sa.Column('annual_used_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('is_primary', sa.Boolean(), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            'co_pay_percentage >= 0 AND co_pay_percentage <= 100', name='check_co_pay_percentage_range'
        ),
        sa.CheckConstraint('deductible_met >= 0', name='check_deductible_met_non_negative'),
        sa.ForeignKeyConstraint(['provider_id'], ['insurance_providers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('policy_number')
    )
    op.create_index('ix_patient_insurances_patient_id', 'patient_insurances', ['patient_id'], unique=False)

    # Bills and items
    op.create_table(
        'bills',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('bill_number', sa.String(length=32), nullable=False),
        sa.Column('invoice_number', sa.String(length=40), nullable=True),
        sa.Column('patient_id', sa.Uuid(), nullable=False),
        sa.Column('doctor_id', sa.Uuid(), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('primary_insurance_id', sa.Uuid(), nullable=True),
        sa.Column('bill_date', sa.Date(), nullable=False),
        sa.Column('due_date', sa.Date(), nullable=True),
        sa.Column('sub_total', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_type', discount_type, nullable=True),
        sa.Column('discount_value', sa.Numeric(12, 2), nullable=True),
        sa.Column('adjustment_discount', sa.Numeric(12, 2), nullable=False),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=True),
        sa.Column('tax', sa.Numeric(12, 2), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('amount_paid', sa.Numeric(12, 2), nullable=False),
        sa.Column('balance_due', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_status', bill_payment_status, nullable=False),
        sa.Column('insurance_claim_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('insurance_approved_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('patient_responsibility', sa.Numeric(12, 2), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('last_payment_date', sa.DateTime(), nullable=True),
        sa.Column('voided_at', sa.DateTime(), nullable=True),
        sa.Column('voided_by', sa.Uuid(), nullable=True),
        sa.Column('void_reason', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('balance_due >= 0', name='check_bill_balance_non_negative'),
        sa.CheckConstraint('sub_total >= 0', name='check_bill_sub_total_non_negative'),
        sa.ForeignKeyConstraint(['primary_insurance_id'], ['patient_insurances.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number')
    )
    op.create_index('ix_bills_bill_number', 'bills', ['bill_number'], unique=True)
    op.create_index('ix_bills_patient_id', 'bills', ['patient_id'], unique=False)
    op.create_index('ix_bills_payment_status', 'bills', ['payment_status'], unique=False)

    op.create_table(
        'bill_items',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('bill_id', sa.Uuid(), nullable=False),
        sa.Column('item_type', item_type, nullable=False),
        sa.Column('source_type', sa.String(length=50), nullable=True),
        sa.Column('source_id', sa.String(length=64), nullable=True),
        sa.Column('category', item_category, nullable=False),
        sa.Column('item_description', sa.String(length=500), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('discount_percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('total_price', sa.Numeric(12, 2), nullable=False),
        sa.Column('added_by', sa.Uuid(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('quantity > 0', name='check_item_quantity_positive'),
        sa.CheckConstraint('unit_price >= 0', name='check_item_unit_price_non_negative'),
        sa.CheckConstraint(
            'discount_percentage >= 0 AND discount_percentage <= 100',
            name='check_item_discount_percentage_range'
        ),
        sa.ForeignKeyConstraint(['bill_id'], ['bills.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bill_items_bill_id', 'bill_items', ['bill_id'], unique=False)
    op.create_index('ix_bill_items_source', 'bill_items', ['source_type', 'source_id'], unique=False)

    # Claims
    op.create_table(
        'insurance_claims',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('claim_number', sa.String(length=32), nullable=False),
        sa.Column('bill_id', sa.Uuid(), nullable=False),
        sa.Column('patient_insurance_id', sa.Uuid(), nullable=False),
        sa.Column('claim_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('approved_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('deductible_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('co_pay_amount', sa.Numeric(12, 2), nullable=True),
        sa.Column('status', claim_status, nullable=False),
        sa.Column('submission_date', sa.DateTime(), nullable=True),
        sa.Column('response_date', sa.DateTime(), nullable=True),
        sa.Column('approval_date', sa.DateTime(), nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('rejection_codes', sa.JSON(), nullable=True),
        sa.Column('documents', sa.JSON(), nullable=True),
        sa.Column('appeal_count', sa.Integer(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('internal_notes', sa.Text(), nullable=True),
        sa.Column('submitted_by', sa.Uuid(), nullable=True),
        sa.Column('processed_by', sa.Uuid(), nullable=True),
        sa.Column('created_by', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('claim_amount > 0', name='check_claim_amount_positive'),
        sa.ForeignKeyConstraint(['bill_id'], ['bills.id']),
        sa.ForeignKeyConstraint(['patient_insurance_id'], ['patient_insurances.id']),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_insurance_claims_claim_number', 'insurance_claims', ['claim_number'], unique=True)
    op.create_index('ix_insurance_claims_bill_id', 'insurance_claims', ['bill_id'], unique=False)
    op.create_index('ix_insurance_claims_status', 'insurance_claims', ['status'], unique=False)

    # Payments and refunds
    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('bill_id', sa.Uuid(), nullable=False),
        sa.Column('transaction_id', sa.String(length=40), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_method', payment_method, nullable=False),
        sa.Column('status', payment_status, nullable=False),
        sa.Column('payment_date', sa.DateTime(), nullable=False),
        sa.Column('reference_number', sa.String(length=100), nullable=True),
        sa.Column('card_last_four', sa.String(length=4), nullable=True),
        sa.Column('card_type', sa.String(length=30), nullable=True),
        sa.Column('bank_name', sa.String(length=100), nullable=True),
        sa.Column('check_number', sa.String(length=50), nullable=True),
        sa.Column('amount_tendered', sa.Numeric(12, 2), nullable=True),
        sa.Column('change_due', sa.Numeric(12, 2), nullable=True),
        sa.Column('insurance_claim_id', sa.Uuid(), nullable=True),
        sa.Column('received_by', sa.Uuid(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('voided_at', sa.DateTime(), nullable=True),
        sa.Column('voided_by', sa.Uuid(), nullable=True),
        sa.Column('void_reason', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('amount > 0', name='check_payment_amount_positive'),
        sa.ForeignKeyConstraint(['bill_id'], ['bills.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['insurance_claim_id'], ['insurance_claims.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id')
    )
    op.create_index('ix_payments_bill_id', 'payments', ['bill_id'], unique=False)
    op.create_index('ix_payments_status', 'payments', ['status'], unique=False)

    op.create_table(
        'bill_refunds',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('bill_id', sa.Uuid(), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=False),
        sa.Column('reference_number', sa.String(length=32), nullable=False),
        sa.Column('refund_amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('refund_type', refund_type, nullable=False),
        sa.Column('refund_reason', sa.Text(), nullable=False),
        sa.Column('refund_method', payment_method_existing, nullable=False),
        sa.Column('refund_date', sa.DateTime(), nullable=False),
        sa.Column('status', refund_status, nullable=False),
        sa.Column('requested_by', sa.Uuid(), nullable=True),
        sa.Column('processed_by', sa.Uuid(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.CheckConstraint('refund_amount > 0', name='check_refund_amount_positive'),
        sa.ForeignKeyConstraint(['bill_id'], ['bills.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference_number')
    )
    op.create_index('ix_bill_refunds_bill_id', 'bill_refunds', ['bill_id'], unique=False)
    op.create_index('ix_bill_refunds_payment_id', 'bill_refunds', ['payment_id'], unique=False)

    # Status trail, settings, audit
    op.create_table(
        'bill_status_history',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('bill_id', sa.Uuid(), nullable=False),
        sa.Column('field_name', sa.String(length=50), nullable=False),
        sa.Column('status_from', sa.String(length=30), nullable=True),
        sa.Column('status_to', sa.String(length=30), nullable=False),
        sa.Column('changed_by', sa.Uuid(), nullable=True),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['bill_id'], ['bills.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_bill_status_history_bill_id', 'bill_status_history', ['bill_id'], unique=False)

    op.create_table(
        'billing_settings',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('data_type', setting_data_type, nullable=False),
        sa.Column('group', sa.String(length=50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_billing_settings_key', 'billing_settings', ['key'], unique=True)

    op.create_table(
        'billing_audit_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('action', audit_action, nullable=False),
        sa.Column('module', sa.String(length=50), nullable=False),
        sa.Column('description', sa.Text(), nullable=False),
        sa.Column('severity', audit_severity, nullable=False),
        sa.Column('resource_type', sa.String(length=50), nullable=True),
        sa.Column('resource_id', sa.Uuid(), nullable=True),
        sa.Column('user_id', sa.Uuid(), nullable=True),
        sa.Column('username', sa.String(length=50), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index('ix_billing_audit_logs_action', 'billing_audit_logs', ['action'], unique=False)
    op.create_index('ix_billing_audit_logs_module', 'billing_audit_logs', ['module'], unique=False)
    op.create_index('ix_billing_audit_logs_resource_id', 'billing_audit_logs', ['resource_id'], unique=False)
    op.create_index('ix_billing_audit_logs_user_id', 'billing_audit_logs', ['user_id'], unique=False)
    op.create_index('ix_billing_audit_logs_created_at', 'billing_audit_logs', ['created_at'], unique=False)


def downgrade() -> None:
    op.drop_table('billing_audit_logs')
    op.drop_table('billing_settings')
    op.drop_table('bill_status_history')
    op.drop_table('bill_refunds')
    op.drop_table('payments')
    op.drop_table('insurance_claims')
    op.drop_table('bill_items')
    op.drop_table('bills')
    op.drop_table('patient_insurances')
    op.drop_table('insurance_providers')

    bind = op.get_bind()
    for enum_type in (
        audit_severity, audit_action, claim_status, setting_data_type, refund_status, refund_type,
        payment_status, payment_method, item_category, item_type, discount_type, bill_payment_status,
    ):
        enum_type.drop(bind, checkfirst=True)
