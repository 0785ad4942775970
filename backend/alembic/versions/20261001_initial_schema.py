"""Initial voucher program schema

Revision ID: initial_schema
Revises:
Create Date: 2026-10-01

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'initial_schema'
down_revision = None
branch_labels = None
depends_on = None

# Enums are stored as their string values (non-native)
ENUM = sa.String(32)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table('users',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('type', ENUM, nullable=False),
        sa.Column('email', sa.String(), nullable=False),
        sa.Column('first_name', sa.String(), nullable=False),
        sa.Column('last_name', sa.String(), nullable=False),
        sa.Column('phone', sa.String(), nullable=True),
        sa.Column('fax', sa.String(), nullable=True),
        sa.Column('password_digest', sa.String(), nullable=True),
        sa.Column('status', ENUM, nullable=False, server_default='active'),
        sa.Column('email_status', ENUM, nullable=False, server_default='active'),
        sa.Column('communication_preference', ENUM, nullable=False, server_default='email'),
        sa.Column('physical_address_1', sa.String(), nullable=True),
        sa.Column('physical_address_2', sa.String(), nullable=True),
        sa.Column('city', sa.String(), nullable=True),
        sa.Column('state', sa.String(), nullable=True),
        sa.Column('zip_code', sa.String(), nullable=True),
        sa.Column('date_of_birth', sa.Date(), nullable=True),
        sa.Column('hearing_disability', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('vision_disability', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('speech_disability', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('mobility_disability', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cognition_disability', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('business_name', sa.String(), nullable=True),
        sa.Column('business_tax_id', sa.String(), nullable=True),
        sa.Column('w9_status', ENUM, nullable=False, server_default='not_submitted'),
        sa.Column('w9_rejections', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('w9_key', sa.String(), nullable=True),
        sa.Column('vendor_status', ENUM, nullable=False, server_default='pending'),
        sa.Column('failed_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('locked_at', sa.DateTime(), nullable=True),
        sa.Column('last_sign_in_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
    op.create_index(op.f('ix_users_type'), 'users', ['type'], unique=False)

    op.create_table('policies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('key', sa.String(), nullable=False),
        sa.Column('value', sa.Integer(), nullable=False),
        sa.Column('updated_by_id', sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['updated_by_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('key'),
    )

    op.create_table('applications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('status', ENUM, nullable=False, server_default='draft'),
        sa.Column('application_type', ENUM, nullable=False, server_default='new'),
        sa.Column('submission_method', ENUM, nullable=False, server_default='online'),
        sa.Column('application_date', sa.DateTime(), nullable=True),
        sa.Column('household_size', sa.Integer(), nullable=True),
        sa.Column('annual_income', sa.Numeric(12, 2), nullable=True),
        sa.Column('maryland_resident', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('self_certify_disability', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('medical_provider_name', sa.String(), nullable=True),
        sa.Column('medical_provider_phone', sa.String(), nullable=True),
        sa.Column('medical_provider_fax', sa.String(), nullable=True),
        sa.Column('medical_provider_email', sa.String(), nullable=True),
        sa.Column('medical_provider_email_status', ENUM, nullable=False, server_default='active'),
        sa.Column('income_proof_status', ENUM, nullable=False, server_default='not_reviewed'),
        sa.Column('residency_proof_status', ENUM, nullable=False, server_default='not_reviewed'),
        sa.Column('income_proof_key', sa.String(), nullable=True),
        sa.Column('residency_proof_key', sa.String(), nullable=True),
        sa.Column('last_proof_submitted_at', sa.DateTime(), nullable=True),
        sa.Column('total_rejections', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('medical_certification_status', ENUM, nullable=False, server_default='not_requested'),
        sa.Column('medical_certification_key', sa.String(), nullable=True),
        sa.Column('medical_certification_requested_at', sa.DateTime(), nullable=True),
        sa.Column('medical_certification_request_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('medical_certification_rejection_reason', sa.Text(), nullable=True),
        sa.Column('needs_review_since', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_applications_id'), 'applications', ['id'], unique=False)
    op.create_index(op.f('ix_applications_user_id'), 'applications', ['user_id'], unique=False)
    op.create_index(op.f('ix_applications_status'), 'applications', ['status'], unique=False)
    op.create_index(op.f('ix_applications_medical_provider_email'), 'applications', ['medical_provider_email'], unique=False)

    op.create_table('application_status_changes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('application_id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('change_type', sa.String(), nullable=False, server_default='status'),
        sa.Column('from_status', sa.String(), nullable=True),
        sa.Column('to_status', sa.String(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('changed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_application_status_changes_application_id'), 'application_status_changes', ['application_id'], unique=False)

    op.create_table('proof_reviews',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('application_id', sa.Integer(), nullable=False),
        sa.Column('admin_id', sa.Integer(), nullable=False),
        sa.Column('proof_type', ENUM, nullable=False),
        sa.Column('status', ENUM, nullable=False),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('submission_method', ENUM, nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ),
        sa.ForeignKeyConstraint(['admin_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_proof_reviews_application_id'), 'proof_reviews', ['application_id'], unique=False)

    op.create_table('events',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('auditable_type', sa.String(), nullable=True),
        sa.Column('auditable_id', sa.Integer(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_events_user_id'), 'events', ['user_id'], unique=False)
    op.create_index(op.f('ix_events_action'), 'events', ['action'], unique=False)
    op.create_index(op.f('ix_events_created_at'), 'events', ['created_at'], unique=False)

    op.create_table('notifications',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('recipient_id', sa.Integer(), nullable=True),
        sa.Column('actor_id', sa.Integer(), nullable=True),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('notifiable_type', sa.String(), nullable=True),
        sa.Column('notifiable_id', sa.Integer(), nullable=True),
        sa.Column('channel', ENUM, nullable=False, server_default='email'),
        sa.Column('delivery_status', ENUM, nullable=False, server_default='pending'),
        sa.Column('message_id', sa.String(), nullable=True),
        sa.Column('metadata', sa.JSON(), nullable=False),
        sa.Column('read_at', sa.DateTime(), nullable=True),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['recipient_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['actor_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_notifications_recipient_id'), 'notifications', ['recipient_id'], unique=False)
    op.create_index(op.f('ix_notifications_message_id'), 'notifications', ['message_id'], unique=False)

    op.create_table('print_queue_items',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('constituent_id', sa.Integer(), nullable=False),
        sa.Column('application_id', sa.Integer(), nullable=True),
        sa.Column('admin_id', sa.Integer(), nullable=True),
        sa.Column('letter_type', sa.String(), nullable=False),
        sa.Column('status', ENUM, nullable=False, server_default='pending'),
        sa.Column('pdf_key', sa.String(), nullable=True),
        sa.Column('printed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['constituent_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ),
        sa.ForeignKeyConstraint(['admin_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_print_queue_items_status'), 'print_queue_items', ['status'], unique=False)

    op.create_table('products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('manufacturer', sa.String(), nullable=True),
        sa.Column('model_number', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=True),
        sa.Column('device_types', sa.JSON(), nullable=False),
        sa.Column('archived_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('invoices',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('vendor_id', sa.Integer(), nullable=False),
        sa.Column('invoice_number', sa.String(), nullable=False),
        sa.Column('status', ENUM, nullable=False, server_default='draft'),
        sa.Column('start_date', sa.DateTime(), nullable=False),
        sa.Column('end_date', sa.DateTime(), nullable=False),
        sa.Column('total_amount', sa.Numeric(12, 2), nullable=False, server_default='0'),
        sa.Column('approved_at', sa.DateTime(), nullable=True),
        sa.Column('payment_recorded_at', sa.DateTime(), nullable=True),
        sa.Column('gad_invoice_reference', sa.String(), nullable=True),
        sa.Column('check_number', sa.String(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['vendor_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('invoice_number'),
    )
    op.create_index(op.f('ix_invoices_id'), 'invoices', ['id'], unique=False)
    op.create_index(op.f('ix_invoices_vendor_id'), 'invoices', ['vendor_id'], unique=False)

    op.create_table('vouchers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('code', sa.String(12), nullable=False),
        sa.Column('application_id', sa.Integer(), nullable=False),
        sa.Column('vendor_id', sa.Integer(), nullable=True),
        sa.Column('status', ENUM, nullable=False, server_default='active'),
        sa.Column('initial_value', sa.Numeric(10, 2), nullable=False),
        sa.Column('remaining_value', sa.Numeric(10, 2), nullable=False),
        sa.Column('issued_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('last_used_at', sa.DateTime(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ),
        sa.ForeignKeyConstraint(['vendor_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_vouchers_id'), 'vouchers', ['id'], unique=False)
    op.create_index(op.f('ix_vouchers_code'), 'vouchers', ['code'], unique=True)
    op.create_index(op.f('ix_vouchers_status'), 'vouchers', ['status'], unique=False)

    op.create_table('voucher_transactions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('voucher_id', sa.Integer(), nullable=False),
        sa.Column('vendor_id', sa.Integer(), nullable=False),
        sa.Column('invoice_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Numeric(10, 2), nullable=False),
        sa.Column('transaction_type', ENUM, nullable=False, server_default='redemption'),
        sa.Column('status', ENUM, nullable=False, server_default='pending'),
        sa.Column('reference_number', sa.String(), nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['voucher_id'], ['vouchers.id'], ),
        sa.ForeignKeyConstraint(['vendor_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['invoice_id'], ['invoices.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('reference_number'),
    )
    op.create_index(op.f('ix_voucher_transactions_id'), 'voucher_transactions', ['id'], unique=False)
    op.create_index(op.f('ix_voucher_transactions_voucher_id'), 'voucher_transactions', ['voucher_id'], unique=False)
    op.create_index(op.f('ix_voucher_transactions_vendor_id'), 'voucher_transactions', ['vendor_id'], unique=False)
    op.create_index(op.f('ix_voucher_transactions_invoice_id'), 'voucher_transactions', ['invoice_id'], unique=False)

    op.create_table('voucher_transaction_products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('voucher_transaction_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['voucher_transaction_id'], ['voucher_transactions.id'], ),
        sa.ForeignKeyConstraint(['product_id'], ['products.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )

    op.create_table('evaluations',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('evaluator_id', sa.Integer(), nullable=False),
        sa.Column('constituent_id', sa.Integer(), nullable=False),
        sa.Column('application_id', sa.Integer(), nullable=False),
        sa.Column('status', ENUM, nullable=False, server_default='requested'),
        sa.Column('evaluation_type', ENUM, nullable=False, server_default='initial'),
        sa.Column('evaluation_date', sa.DateTime(), nullable=True),
        sa.Column('location', sa.String(), nullable=True),
        sa.Column('needs', sa.Text(), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('attendees', sa.JSON(), nullable=False),
        sa.Column('products_tried', sa.JSON(), nullable=False),
        sa.Column('recommended_product_ids', sa.JSON(), nullable=False),
        sa.Column('reschedule_reason', sa.Text(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['evaluator_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['constituent_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['application_id'], ['applications.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_evaluations_evaluator_id'), 'evaluations', ['evaluator_id'], unique=False)

    op.create_table('w9_reviews',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('vendor_id', sa.Integer(), nullable=False),
        sa.Column('admin_id', sa.Integer(), nullable=False),
        sa.Column('status', ENUM, nullable=False),
        sa.Column('rejection_reason_code', ENUM, nullable=True),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['vendor_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['admin_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_w9_reviews_vendor_id'), 'w9_reviews', ['vendor_id'], unique=False)

    op.create_table('inbound_emails',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('message_id', sa.String(), nullable=False),
        sa.Column('status', ENUM, nullable=False, server_default='pending'),
        sa.Column('mailbox', sa.String(), nullable=True),
        sa.Column('sender', sa.String(), nullable=True),
        sa.Column('recipient', sa.String(), nullable=True),
        sa.Column('subject', sa.String(), nullable=True),
        sa.Column('raw_email', sa.Text(), nullable=False),
        sa.Column('bounce_reason', sa.String(), nullable=True),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('message_id', name='uq_inbound_emails_message_id'),
    )


def downgrade():
    op.drop_table('inbound_emails')
    op.drop_index(op.f('ix_w9_reviews_vendor_id'), table_name='w9_reviews')
    op.drop_table('w9_reviews')
    op.drop_index(op.f('ix_evaluations_evaluator_id'), table_name='evaluations')
    op.drop_table('evaluations')
    op.drop_table('voucher_transaction_products')
    for name in ('invoice_id', 'vendor_id', 'voucher_id', 'id'):
        op.drop_index(op.f(f'ix_voucher_transactions_{name}'), table_name='voucher_transactions')
    op.drop_table('voucher_transactions')
    for name in ('status', 'code', 'id'):
        op.drop_index(op.f(f'ix_vouchers_{name}'), table_name='vouchers')
    op.drop_table('vouchers')
    op.drop_index(op.f('ix_invoices_vendor_id'), table_name='invoices')
    op.drop_index(op.f('ix_invoices_id'), table_name='invoices')
    op.drop_table('invoices')
    op.drop_table('products')
    op.drop_index(op.f('ix_print_queue_items_status'), table_name='print_queue_items')
    op.drop_table('print_queue_items')
    op.drop_index(op.f('ix_notifications_message_id'), table_name='notifications')
    op.drop_index(op.f('ix_notifications_recipient_id'), table_name='notifications')
    op.drop_table('notifications')
    for name in ('created_at', 'action', 'user_id'):
        op.drop_index(op.f(f'ix_events_{name}'), table_name='events')
    op.drop_table('events')
    op.drop_index(op.f('ix_proof_reviews_application_id'), table_name='proof_reviews')
    op.drop_table('proof_reviews')
    op.drop_index(op.f('ix_application_status_changes_application_id'), table_name='application_status_changes')
    op.drop_table('application_status_changes')
    for name in ('medical_provider_email', 'status', 'user_id', 'id'):
        op.drop_index(op.f(f'ix_applications_{name}'), table_name='applications')
    op.drop_table('applications')
    op.drop_table('policies')
    op.drop_index(op.f('ix_users_type'), table_name='users')
    op.drop_index(op.f('ix_users_id'), table_name='users')
    op.drop_table('users')
