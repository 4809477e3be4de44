"""Initial billing schema

Revision ID: 001
Revises:
Create Date: 2026-10-19

WHY: Creates the tenant, party and context tables billing depends on,
then the invoice and transaction ledger and the audit trail.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


# Enum values are stored lowercase (values_callable in models.base.enum_column)
ENUMS = {
    'userrole': ('admin', 'client', 'consultant'),
    'projectstatus': ('open', 'in_progress', 'completed', 'cancelled'),
    'proposalstatus': ('submitted', 'accepted', 'rejected', 'withdrawn'),
    'invoicetype': ('client', 'consultant', 'platform', 'refund'),
    'invoicestatus': (
        'draft', 'sent', 'pending', 'partial', 'paid', 'overdue', 'cancelled', 'refunded',
    ),
    'transactiontype': ('payment', 'refund', 'payout', 'transfer', 'adjustment', 'fee'),
    'paymentmethod': ('credit_card', 'bank_transfer', 'paypal', 'stripe', 'wallet', 'other'),
    'transactionstatus': (
        'pending', 'processing', 'completed', 'failed', 'cancelled', 'refunded', 'disputed',
    ),
    'refundreason': ('duplicate', 'fraudulent', 'requested_by_customer', 'abandoned', 'other'),
    'auditaction': (
        'create', 'update', 'delete',
        'invoice_sent', 'invoice_cancelled', 'invoice_refunded', 'recurring_generated',
        'payment_processed', 'payment_failed', 'refund_processed', 'payout_processed',
        'webhook_received',
    ),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*ENUMS[name], name=name, create_type=False)


def _money(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.Numeric(12, 2), nullable=nullable, server_default='0')


def _timestamps(index: bool = False) -> list:
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP'), index=index),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text('CURRENT_TIMESTAMP')),
    ]


def upgrade() -> None:
    """
    Create all billing tables.

    WHY: Order follows foreign keys: organizations, users, profiles,
    projects, proposals, invoices, transactions, audit_logs.
    """
    bind = op.get_bind()
    for name, values in ENUMS.items():
        sa.Enum(*values, name=name).create(bind, checkfirst=True)

    op.create_table(
        'organizations',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(length=255), nullable=False, index=True),
        sa.Column('settings', sa.JSON(), nullable=False, server_default='{}'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(index=True),
    )

    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('role', _enum('userrole'), nullable=False, server_default='client'),
        sa.Column('org_id', sa.Integer(), sa.ForeignKey('organizations.id'), nullable=False, index=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
        *_timestamps(index=True),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'client_profiles',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('company_name', sa.String(length=255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True, index=True),
        sa.Column('default_payment_method_id', sa.String(length=255), nullable=True),
        sa.Column('billing_details', sa.JSON(), nullable=True),
        *_timestamps(index=True),
    )
    op.create_index('ix_client_profiles_user_id', 'client_profiles', ['user_id'], unique=True)

    op.create_table(
        'consultant_profiles',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('stripe_connect_id', sa.String(length=255), nullable=True),
        sa.Column('preferred_payout_method', sa.String(length=50), nullable=True),
        sa.Column('bank_details', sa.JSON(), nullable=True),
        sa.Column('last_payout_at', sa.DateTime(), nullable=True),
        *_timestamps(index=True),
    )
    op.create_index('ix_consultant_profiles_user_id', 'consultant_profiles', ['user_id'], unique=True)

    op.create_table(
        'projects',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('status', _enum('projectstatus'), nullable=False, server_default='open', index=True),
        sa.Column('org_id', sa.Integer(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('client_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('consultant_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        *_timestamps(),
    )

    op.create_table(
        'proposals',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('title', sa.String(length=255), nullable=False),
        sa.Column('status', _enum('proposalstatus'), nullable=False, server_default='submitted', index=True),
        sa.Column('project_id', sa.Integer(), sa.ForeignKey('projects.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('org_id', sa.Integer(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('client_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('consultant_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False, index=True),
        sa.Column('line_items', sa.JSON(), nullable=True),
        _money('total'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        *_timestamps(),
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('invoice_number', sa.String(length=50), nullable=False),
        sa.Column('invoice_type', _enum('invoicetype'), nullable=False, server_default='client', index=True),
        sa.Column('status', _enum('invoicestatus'), nullable=False, server_default='draft', index=True),
        sa.Column('org_id', sa.Integer(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('client_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('consultant_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('project_id', sa.Integer(), sa.ForeignKey('projects.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('proposal_id', sa.Integer(), sa.ForeignKey('proposals.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        # Amounts
        sa.Column('items', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('discount_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        _money('platform_fee_amount'),
        sa.Column('platform_fee_percentage', sa.Numeric(5, 2), nullable=True),
        sa.Column('platform_fee_description', sa.String(length=255), nullable=True),
        _money('subtotal'),
        _money('tax_amount'),
        _money('discount_amount'),
        _money('total'),
        _money('paid_amount'),
        _money('amount_due'),
        # Payment
        sa.Column('payment_terms', sa.String(length=20), nullable=True, server_default='net_30'),
        sa.Column('payment_method', sa.String(length=50), nullable=True),
        sa.Column('payment_instructions', sa.Text(), nullable=True),
        sa.Column('payment_schedule', sa.JSON(), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True, index=True),
        sa.Column('stripe_checkout_session_id', sa.String(length=255), nullable=True, index=True),
        # Dates
        sa.Column('issue_date', sa.Date(), nullable=False, server_default=sa.text('CURRENT_DATE')),
        sa.Column('due_date', sa.Date(), nullable=True, index=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('viewed_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        # Metadata
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('terms', sa.Text(), nullable=True),
        sa.Column('tags', sa.JSON(), nullable=False, server_default='[]'),
        sa.Column('billing_details', sa.JSON(), nullable=True),
        sa.Column('recipient_details', sa.JSON(), nullable=True),
        sa.Column('reminders_sent', sa.JSON(), nullable=False, server_default='[]'),
        # Recurring
        sa.Column('is_recurring', sa.Boolean(), nullable=False, server_default='false', index=True),
        sa.Column('recurring_frequency', sa.String(length=20), nullable=True),
        sa.Column('next_invoice_date', sa.Date(), nullable=True, index=True),
        sa.Column('recurring_end_date', sa.Date(), nullable=True),
        sa.Column('remaining_cycles', sa.Integer(), nullable=True),
        sa.Column('parent_invoice_id', sa.Integer(), sa.ForeignKey('invoices.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('related_invoice_ids', sa.JSON(), nullable=False, server_default='[]'),
        *_timestamps(index=True),
    )
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'], unique=True)

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('transaction_ref', sa.String(length=100), nullable=False),
        sa.Column('transaction_type', _enum('transactiontype'), nullable=False, index=True),
        sa.Column('payment_method', _enum('paymentmethod'), nullable=False),
        sa.Column('status', _enum('transactionstatus'), nullable=False, server_default='pending', index=True),
        _money('amount'),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
        _money('fee'),
        _money('net'),
        sa.Column('org_id', sa.Integer(), sa.ForeignKey('organizations.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('invoice_id', sa.Integer(), sa.ForeignKey('invoices.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('project_id', sa.Integer(), sa.ForeignKey('projects.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('proposal_id', sa.Integer(), sa.ForeignKey('proposals.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('client_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('consultant_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True, index=True),
        sa.Column('original_transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=True, index=True),
        sa.Column('created_by_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        # Gateway references
        sa.Column('gateway_provider', sa.String(length=50), nullable=True),
        sa.Column('payment_intent_id', sa.String(length=255), nullable=True, index=True),
        sa.Column('charge_id', sa.String(length=255), nullable=True),
        sa.Column('transfer_id', sa.String(length=255), nullable=True),
        sa.Column('refund_id', sa.String(length=255), nullable=True),
        sa.Column('payout_id', sa.String(length=255), nullable=True),
        sa.Column('checkout_session_id', sa.String(length=255), nullable=True, index=True),
        sa.Column('receipt_url', sa.Text(), nullable=True),
        sa.Column('gateway_response', sa.JSON(), nullable=True),
        # Snapshots
        sa.Column('billing_details', sa.JSON(), nullable=True),
        sa.Column('payment_method_details', sa.JSON(), nullable=True),
        sa.Column('error', sa.JSON(), nullable=True),
        sa.Column('refund_reason', _enum('refundreason'), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('extra_data', sa.JSON(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        *_timestamps(index=True),
    )
    op.create_index('ix_transactions_transaction_ref', 'transactions', ['transaction_ref'], unique=True)

    op.create_table(
        'audit_logs',
        sa.Column('id', sa.Integer(), primary_key=True, index=True),
        sa.Column('actor_user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('action', _enum('auditaction'), nullable=False, index=True),
        sa.Column('resource_type', sa.String(length=100), nullable=False, index=True),
        sa.Column('resource_id', sa.Integer(), nullable=True, index=True),
        sa.Column('org_id', sa.Integer(), sa.ForeignKey('organizations.id', ondelete='SET NULL'), nullable=True, index=True),
        sa.Column('changes', sa.JSON(), nullable=True),
        sa.Column('extra_data', sa.JSON(), nullable=True),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        *_timestamps(index=True),
    )


def downgrade() -> None:
    """Drop all billing tables and enum types in reverse dependency order."""
    for table in (
        'audit_logs',
        'transactions',
        'invoices',
        'proposals',
        'projects',
        'consultant_profiles',
        'client_profiles',
        'users',
        'organizations',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        sa.Enum(name=name).drop(bind, checkfirst=True)
