# backend/alembic/versions/a1b2c3d4e5f6_initial_schema.py
"""Initial schema: templates, workspaces, app settings

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-18 09:12:44.201937

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = 'a1b2c3d4e5f6'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table('proxmox_templates',
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('parent_template_id', sa.Uuid(), nullable=True),
        sa.Column('base_ct_template', sa.String(length=255), nullable=True),
        sa.Column('vmid', sa.Integer(), nullable=True),
        sa.Column('node', sa.String(length=100), nullable=True),
        sa.Column('storage', sa.String(length=100), nullable=True),
        sa.Column('status', sa.Enum('PENDING', 'CREATING', 'STAGING', 'READY', 'ERROR', name='templatestatus'), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('staging_container_ip', sa.String(length=45), nullable=True),
        sa.Column('tech_stacks', sa.JSON(), nullable=False),
        sa.Column('inherited_tech_stacks', sa.JSON(), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False),
        sa.Column('env_vars', sa.JSON(), nullable=True),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['parent_template_id'], ['proxmox_templates.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('vmid')
    )
    op.create_index(op.f('ix_proxmox_templates_user_id'), 'proxmox_templates', ['user_id'], unique=False)

    op.create_table('workspaces',
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('status', sa.Enum('PENDING', 'CREATING', 'RUNNING', 'STOPPED', 'ERROR', name='workspacestatus'), nullable=False),
        sa.Column('container_id', sa.String(length=64), nullable=True),
        sa.Column('container_backend', sa.String(length=20), nullable=False),
        sa.Column('container_ip', sa.String(length=45), nullable=True),
        sa.Column('template_id', sa.Uuid(), nullable=True),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.ForeignKeyConstraint(['template_id'], ['proxmox_templates.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_workspaces_user_id'), 'workspaces', ['user_id'], unique=False)
    op.create_index(op.f('ix_workspaces_container_id'), 'workspaces', ['container_id'], unique=False)

    op.create_table('app_settings',
        sa.Column('key', sa.String(length=100), nullable=False),
        sa.Column('value', sa.JSON(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_app_settings_key'), 'app_settings', ['key'], unique=True)


def downgrade() -> None:
    op.drop_index(op.f('ix_app_settings_key'), table_name='app_settings')
    op.drop_table('app_settings')
    op.drop_index(op.f('ix_workspaces_container_id'), table_name='workspaces')
    op.drop_index(op.f('ix_workspaces_user_id'), table_name='workspaces')
    op.drop_table('workspaces')
    op.drop_index(op.f('ix_proxmox_templates_user_id'), table_name='proxmox_templates')
    op.drop_table('proxmox_templates')
    sa.Enum(name='workspacestatus').drop(op.get_bind(), checkfirst=True)
    sa.Enum(name='templatestatus').drop(op.get_bind(), checkfirst=True)
