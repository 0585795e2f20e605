"""floor grid allocation and installment notes

Revision ID: 20250415_floor_grid
Revises: 20250301_initial
Create Date: 2025-04-15 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '20250415_floor_grid'
down_revision = '20250301_initial'
branch_labels = None
depends_on = None


def upgrade():
    """Add floor grid tables and the pledge_payments.notes column."""
    from sqlalchemy import inspect

    inspector = inspect(op.get_bind())
    tables = set(inspector.get_table_names())

    if 'notes' not in {col['name'] for col in inspector.get_columns('pledge_payments')}:
        op.add_column('pledge_payments', sa.Column('notes', sa.Text(), nullable=True))

    if 'floor_grid_cells' not in tables:
        op.create_table(
            'floor_grid_cells',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('cell_id', sa.String(length=20), nullable=False),
            sa.Column('rectangle_id', sa.String(length=5), nullable=False),
            sa.Column('position', sa.Integer(), nullable=False),
            sa.Column('grid_x', sa.Integer(), nullable=False),
            sa.Column('grid_y', sa.Integer(), nullable=False),
            sa.Column('cell_type', sa.String(length=10), nullable=True),
            sa.Column('area_size', sa.Numeric(6, 2), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('pledge_id', sa.Integer(), nullable=True),
            sa.Column('payment_id', sa.Integer(), nullable=True),
            sa.Column('donor_name', sa.String(length=255), nullable=True),
            sa.Column('amount', sa.Numeric(10, 2), nullable=True),
            sa.Column('assigned_date', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['pledge_id'], ['pledges.id']),
            sa.ForeignKeyConstraint(['payment_id'], ['payments.id']),
            sa.UniqueConstraint('cell_id')
        )
        op.create_index('ix_floor_grid_cells_status_order', 'floor_grid_cells',
                        ['status', 'rectangle_id', 'position'])

    if 'custom_amount_tracking' not in tables:
        op.create_table(
            'custom_amount_tracking',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('donor_id', sa.Integer(), nullable=True),
            sa.Column('donor_name', sa.String(length=255), nullable=False),
            sa.Column('total_amount', sa.Numeric(10, 2), nullable=True),
            sa.Column('allocated_amount', sa.Numeric(10, 2), nullable=True),
            sa.Column('remaining_amount', sa.Numeric(10, 2), nullable=True),
            sa.Column('last_updated', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['donor_id'], ['donors.id'])
        )


def downgrade():
    op.drop_table('custom_amount_tracking')
    op.drop_index('ix_floor_grid_cells_status_order', table_name='floor_grid_cells')
    op.drop_table('floor_grid_cells')
    op.drop_column('pledge_payments', 'notes')
