"""Baseline migration - tenants, CRM entities, credit ledger and automations

Revision ID: 0001_baseline
Revises: 
Create Date: 2026-10-17

Creates every table the credit metering and automation engine needs.
"""
from typing import Sequence, Union

from alembic import op


# revision identifiers, used by Alembic.
revision: str = '0001_baseline'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create tenant, CRM, credit and automation tables."""

    op.execute('CREATE EXTENSION IF NOT EXISTS pgcrypto')  # For gen_random_uuid()

    # ==========================================================================
    # Organizations
    # ==========================================================================
    op.execute('''
        CREATE TABLE organizations (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            name VARCHAR(255) NOT NULL,
            slug VARCHAR(100) UNIQUE NOT NULL,
            business_name VARCHAR(255),
            operator_name VARCHAR(255),
            business_phone VARCHAR(30),
            business_email VARCHAR(255),
            billing_email VARCHAR(255),
            ai_assistant_name VARCHAR(50) DEFAULT 'Kai',
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')

    # ==========================================================================
    # Leads / Students
    # ==========================================================================
    op.execute('''
        CREATE TABLE leads (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            first_name VARCHAR(100) NOT NULL,
            last_name VARCHAR(100),
            email VARCHAR(255),
            phone VARCHAR(30),
            source VARCHAR(50),
            status VARCHAR(30) NOT NULL DEFAULT 'new',
            opted_out BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_leads_org_status ON leads(organization_id, status)')

    op.execute('''
        CREATE TABLE students (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            lead_id UUID REFERENCES leads(id) ON DELETE SET NULL,
            first_name VARCHAR(100) NOT NULL,
            last_name VARCHAR(100),
            email VARCHAR(255),
            phone VARCHAR(30),
            status VARCHAR(30) NOT NULL DEFAULT 'active',
            opted_out BOOLEAN NOT NULL DEFAULT false,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute('CREATE INDEX idx_students_org_status ON students(organization_id, status)')

    # ==========================================================================
    # Credit ledger
    # ==========================================================================
    op.execute('''
        CREATE TABLE organization_credit_balances (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID UNIQUE NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            balance INTEGER NOT NULL DEFAULT 0,
            period_allowance INTEGER NOT NULL DEFAULT 0,
            period_used INTEGER NOT NULL DEFAULT 0,
            total_purchased INTEGER NOT NULL DEFAULT 0,
            total_allocated INTEGER NOT NULL DEFAULT 0,
            total_used INTEGER NOT NULL DEFAULT 0,
            low_credit_threshold INTEGER NOT NULL DEFAULT 50,
            low_credit_alert_sent BOOLEAN NOT NULL DEFAULT false,
            last_reset_at TIMESTAMPTZ,
            next_reset_at TIMESTAMPTZ,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            CONSTRAINT chk_credit_balance_non_negative CHECK (balance >= 0)
        )
    ''')
    op.execute(
        'CREATE INDEX idx_credit_balance_next_reset '
        'ON organization_credit_balances(next_reset_at)'
    )

    op.execute('''
        CREATE TABLE credit_transactions (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            type VARCHAR(20) NOT NULL,
            amount INTEGER NOT NULL,
            balance_after INTEGER NOT NULL,
            task_type VARCHAR(30),
            description TEXT NOT NULL DEFAULT '',
            metadata JSONB,
            related_entity_id VARCHAR(255),
            related_transaction_id UUID,
            user_id UUID,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute(
        'CREATE INDEX idx_credit_tx_org_created '
        'ON credit_transactions(organization_id, created_at)'
    )
    op.execute(
        'CREATE INDEX idx_credit_tx_related_tx '
        'ON credit_transactions(related_transaction_id)'
    )

    # ==========================================================================
    # Automations
    # ==========================================================================
    op.execute('''
        CREATE TABLE automation_sequences (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID REFERENCES organizations(id) ON DELETE CASCADE,
            source_sequence_id UUID REFERENCES automation_sequences(id) ON DELETE SET NULL,
            name VARCHAR(255) NOT NULL,
            description TEXT,
            trigger_key VARCHAR(50) NOT NULL,
            is_active BOOLEAN NOT NULL DEFAULT true,
            enrollment_count INTEGER NOT NULL DEFAULT 0,
            completed_count INTEGER NOT NULL DEFAULT 0,
            created_by_user_id UUID,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    op.execute(
        'CREATE INDEX idx_seq_trigger_active '
        'ON automation_sequences(organization_id, trigger_key, is_active)'
    )
    op.execute('CREATE INDEX idx_seq_source ON automation_sequences(source_sequence_id)')

    op.execute('''
        CREATE TABLE automation_steps (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            sequence_id UUID NOT NULL REFERENCES automation_sequences(id) ON DELETE CASCADE,
            step_order INTEGER NOT NULL,
            name VARCHAR(255),
            action_type VARCHAR(30) NOT NULL,
            delay_minutes INTEGER NOT NULL DEFAULT 0,
            subject VARCHAR(500),
            message TEXT,
            call_duration_seconds INTEGER,
            CONSTRAINT uq_step_order UNIQUE (sequence_id, step_order),
            CONSTRAINT chk_step_delay_non_negative CHECK (delay_minutes >= 0)
        )
    ''')

    op.execute('''
        CREATE TABLE automation_enrollments (
            id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
            organization_id UUID NOT NULL REFERENCES organizations(id) ON DELETE CASCADE,
            sequence_id UUID NOT NULL REFERENCES automation_sequences(id) ON DELETE CASCADE,
            entity_type VARCHAR(20) NOT NULL,
            entity_id UUID NOT NULL,
            current_step_id UUID REFERENCES automation_steps(id) ON DELETE SET NULL,
            current_step_order INTEGER,
            status VARCHAR(20) NOT NULL DEFAULT 'active',
            next_execution_at TIMESTAMPTZ,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            last_error TEXT,
            claimed_at TIMESTAMPTZ,
            enrolled_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            completed_at TIMESTAMPTZ,
            cancelled_at TIMESTAMPTZ,
            cancel_reason TEXT,
            created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
        )
    ''')
    # At most one active enrollment per (sequence, entity)
    op.execute('''
        CREATE UNIQUE INDEX uq_enrollment_active_entity
        ON automation_enrollments(sequence_id, entity_type, entity_id)
        WHERE status = 'active'
    ''')
    op.execute('''
        CREATE INDEX idx_enrollment_due
        ON automation_enrollments(status, next_execution_at)
        WHERE status = 'active'
    ''')
    op.execute(
        'CREATE INDEX idx_enrollment_entity '
        'ON automation_enrollments(entity_type, entity_id)'
    )


def downgrade() -> None:
    """Drop all tables in reverse dependency order."""
    op.execute('DROP TABLE IF EXISTS automation_enrollments')
    op.execute('DROP TABLE IF EXISTS automation_steps')
    op.execute('DROP TABLE IF EXISTS automation_sequences')
    op.execute('DROP TABLE IF EXISTS credit_transactions')
    op.execute('DROP TABLE IF EXISTS organization_credit_balances')
    op.execute('DROP TABLE IF EXISTS students')
    op.execute('DROP TABLE IF EXISTS leads')
    op.execute('DROP TABLE IF EXISTS organizations')
