"""initial clinic booking schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-18 12:00:00

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '0001_initial'
down_revision = None
branch_labels = None
depends_on = None

ACTIVE = sa.text("status IN ('scheduled', 'ongoing')")
ONGOING = sa.text("status = 'ongoing'")


def upgrade() -> None:
    op.create_table(
        'specialities',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False, unique=True),
        sa.Column('description', sa.Text(), nullable=False),
    )
    op.create_table(
        'appointment_types',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('speciality_id', sa.Integer(), sa.ForeignKey('specialities.id'), nullable=False),
    )
    op.create_table(
        'login',
        sa.Column('email', sa.String(), primary_key=True),
        sa.Column('hashed_password', sa.String(), nullable=False),
        sa.Column('is_doctor', sa.Boolean(), nullable=False),
    )
    op.create_table(
        'doctors',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('speciality_id', sa.Integer(), sa.ForeignKey('specialities.id'), nullable=False),
        sa.Column('city', sa.String(), nullable=False),
        sa.Column('address', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('phone', sa.String(), nullable=False),
    )
    op.create_index('ix_doctors_city', 'doctors', ['city'])
    op.create_table(
        'patients',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('email', sa.String(), nullable=False, unique=True),
        sa.Column('phone', sa.String(), nullable=False),
        sa.Column('gender', sa.String(), nullable=True),
        sa.Column('weight', sa.Integer(), nullable=True),
        sa.Column('age', sa.Integer(), nullable=True),
        sa.Column('blood_group', sa.String(), nullable=True),
    )
    op.create_table(
        'doctor_slots',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('time_start', sa.Time(), nullable=False),
        sa.UniqueConstraint('doctor_id', 'time_start', name='_doctor_time_start_uc'),
    )
    op.create_table(
        'appointments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('doctors.id'), nullable=False),
        sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
        sa.Column('slot_id', sa.Integer(), sa.ForeignKey('doctor_slots.id'), nullable=False),
        sa.Column('appointment_date', sa.Date(), nullable=False),
        sa.Column('appointment_type', sa.Integer(), sa.ForeignKey('appointment_types.id'), nullable=False),
        sa.Column('visit_mode', sa.String(), nullable=False),
        sa.Column('symptom', sa.Text(), nullable=False),
        sa.Column('status', sa.String(), nullable=False),
        sa.Column('prescription_id', sa.Integer(), nullable=True),
    )
    op.create_index('uq_appointment_active_slot', 'appointments', ['doctor_id', 'slot_id', 'appointment_date'],
                    unique=True, postgresql_where=ACTIVE, sqlite_where=ACTIVE)
    op.create_index('idx_appointment_doctor_date', 'appointments', ['doctor_id', 'appointment_date'])

    for table, number in (('tokens', 'token_number'), ('emergency_appointments', 'emergency_no')):
        short = 'token' if table == 'tokens' else 'emergency'
        op.create_table(
            table,
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('doctor_id', sa.Integer(), sa.ForeignKey('doctors.id'), nullable=False),
            sa.Column('patient_id', sa.Integer(), sa.ForeignKey('patients.id'), nullable=False),
            sa.Column('appointment_date', sa.Date(), nullable=False),
            sa.Column('appointment_type', sa.Integer(), sa.ForeignKey('appointment_types.id'), nullable=False),
            sa.Column(number, sa.Integer(), nullable=False),
            sa.Column('status', sa.String(), nullable=False),
            sa.Column('symptom', sa.Text(), nullable=False),
            sa.UniqueConstraint('doctor_id', 'appointment_date', number, name=f'_{number}_uc'),
            sa.UniqueConstraint('doctor_id', 'patient_id', 'appointment_date', 'appointment_type',
                                name=f'_{short}_patient_uc'),
        )
        op.create_index(f'uq_{short}_ongoing', table, ['doctor_id', 'appointment_date'],
                        unique=True, postgresql_where=ONGOING, sqlite_where=ONGOING)


def downgrade() -> None:
    op.drop_index('uq_emergency_ongoing', table_name='emergency_appointments')
    op.drop_table('emergency_appointments')
    op.drop_index('uq_token_ongoing', table_name='tokens')
    op.drop_table('tokens')
    op.drop_index('idx_appointment_doctor_date', table_name='appointments')
    op.drop_index('uq_appointment_active_slot', table_name='appointments')
    op.drop_table('appointments')
    op.drop_table('doctor_slots')
    op.drop_table('patients')
    op.drop_index('ix_doctors_city', table_name='doctors')
    op.drop_table('doctors')
    op.drop_table('login')
    op.drop_table('appointment_types')
    op.drop_table('specialities')
