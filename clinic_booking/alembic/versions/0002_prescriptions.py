"""prescriptions

Revision ID: 0002_prescriptions
Revises: 0001_initial
Create Date: 2026-10-25 10:00:00

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0002_prescriptions'
down_revision = '0001_initial'
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'prescriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('appointment_date', sa.Date(), nullable=False),
        sa.Column('prescription', sa.Text(), nullable=False),
    )
    op.create_index('ix_prescriptions_patient_id', 'prescriptions', ['patient_id'])
    # Batch mode so SQLite can add the constraint by copying the table.
    with op.batch_alter_table('appointments') as batch_op:
        batch_op.create_foreign_key('fk_appointments_prescription_id', 'prescriptions',
                                    ['prescription_id'], ['id'])


def downgrade() -> None:
    with op.batch_alter_table('appointments') as batch_op:
        batch_op.drop_constraint('fk_appointments_prescription_id', type_='foreignkey')
    op.drop_index('ix_prescriptions_patient_id', table_name='prescriptions')
    op.drop_table('prescriptions')
