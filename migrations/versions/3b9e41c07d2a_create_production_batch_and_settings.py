"""Create production, batch and settings tables

Revision ID: 3b9e41c07d2a
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3b9e41c07d2a'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table('production_record',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('aviary_id', sa.String(length=10), nullable=False),
        sa.Column('batch_id', sa.String(length=100), server_default='-', nullable=False),
        sa.Column('live_birds', sa.Integer(), server_default='0', nullable=False),
        sa.Column('clean_eggs', sa.Integer(), server_default='0', nullable=False),
        sa.Column('dirty_eggs', sa.Integer(), server_default='0', nullable=False),
        sa.Column('cracked_eggs', sa.Integer(), server_default='0', nullable=False),
        sa.Column('floor_eggs', sa.Integer(), server_default='0', nullable=False),
        sa.Column('egg_weight_avg', sa.Float(), server_default='0', nullable=False),
        sa.Column('bird_weight_avg', sa.Float(), server_default='0', nullable=False),
        sa.Column('mortality', sa.Integer(), server_default='0', nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('total_eggs', sa.Integer(), server_default='0', nullable=False),
        sa.Column('clean_pct', sa.Float(), server_default='0', nullable=False),
        sa.Column('dirty_pct', sa.Float(), server_default='0', nullable=False),
        sa.Column('cracked_pct', sa.Float(), server_default='0', nullable=False),
        sa.Column('floor_pct', sa.Float(), server_default='0', nullable=False),
        sa.Column('laying_rate', sa.Float(), server_default='0', nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('production_record', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_production_record_date'), ['date'], unique=False)
        batch_op.create_index(batch_op.f('ix_production_record_aviary_id'), ['aviary_id'], unique=False)

    op.create_table('batch_record',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('aviary_id', sa.String(length=10), nullable=False),
        sa.Column('batch_id', sa.String(length=100), nullable=False),
        sa.Column('age_weeks', sa.Integer(), server_default='0', nullable=False),
        sa.Column('current_birds', sa.Integer(), server_default='0', nullable=False),
        sa.Column('weight', sa.Float(), server_default='0', nullable=False),
        sa.Column('uniformity', sa.Float(), server_default='0', nullable=False),
        sa.Column('feathering', sa.String(length=20), server_default='Bom', nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    with op.batch_alter_table('batch_record', schema=None) as batch_op:
        batch_op.create_index(batch_op.f('ix_batch_record_date'), ['date'], unique=False)
        batch_op.create_index(batch_op.f('ix_batch_record_aviary_id'), ['aviary_id'], unique=False)

    op.create_table('app_setting',
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('key')
    )


def downgrade():
    op.drop_table('app_setting')
    with op.batch_alter_table('batch_record', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_batch_record_aviary_id'))
        batch_op.drop_index(batch_op.f('ix_batch_record_date'))
    op.drop_table('batch_record')
    with op.batch_alter_table('production_record', schema=None) as batch_op:
        batch_op.drop_index(batch_op.f('ix_production_record_aviary_id'))
        batch_op.drop_index(batch_op.f('ix_production_record_date'))
    op.drop_table('production_record')
