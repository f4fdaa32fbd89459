"""create attribute, value, entity, import and activity tables

Revision ID: 5c7d9e1f2a3b
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c7d9e1f2a3b'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

import_status = sa.Enum('pending', 'success', 'fail', name='importstatus')


def upgrade() -> None:
    op.create_table(
        'attributes',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('slug', sa.String(length=150), nullable=False),
        sa.Column('name', sa.String(length=150), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('group', sa.String(length=150), nullable=True),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('is_required', sa.Boolean(), nullable=False),
        sa.Column('is_collection', sa.Boolean(), nullable=False),
        sa.Column('default', sa.JSON(), nullable=True),
        sa.Column('options', sa.JSON(), nullable=True),
        sa.Column('entities', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_attributes_slug'), 'attributes', ['slug'])
    op.create_index(op.f('ix_attributes_group'), 'attributes', ['group'])

    op.create_table(
        'attribute_values',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('attribute_id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('entity_id', sa.String(length=64), nullable=False),
        sa.Column('position', sa.Integer(), nullable=False),
        sa.Column('value_type', sa.String(length=32), nullable=False),
        sa.Column('value', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['attribute_id'], ['attributes.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint(
            'attribute_id', 'entity_type', 'entity_id', 'position',
            name='ux_attribute_values_attr_entity_position',
        ),
    )
    op.create_index(op.f('ix_attribute_values_attribute_id'), 'attribute_values', ['attribute_id'])
    op.create_index('ix_attribute_values_entity', 'attribute_values', ['entity_type', 'entity_id'])

    op.create_table(
        'entities',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('entity_type', sa.String(length=64), nullable=False),
        sa.Column('key', sa.String(length=191), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('entity_type', 'key', name='ux_entities_type_key'),
    )
    op.create_index(op.f('ix_entities_entity_type'), 'entities', ['entity_type'])

    op.create_table(
        'import_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=16), nullable=False),
        sa.Column('resource_type', sa.String(length=64), nullable=False),
        sa.Column('filename', sa.String(length=255), nullable=True),
        sa.Column('row_count', sa.Integer(), nullable=False),
        sa.Column('committed_count', sa.Integer(), nullable=False),
        sa.Column('failed_count', sa.Integer(), nullable=False),
        sa.Column('actor_ref', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_import_logs_action'), 'import_logs', ['action'])
    op.create_index(op.f('ix_import_logs_resource_type'), 'import_logs', ['resource_type'])

    op.create_table(
        'import_records',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('resource_type', sa.String(length=64), nullable=False),
        sa.Column('data', sa.JSON(), nullable=False),
        sa.Column('status', import_status, nullable=False),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('import_log_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['import_log_id'], ['import_logs.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_import_records_resource_type'), 'import_records', ['resource_type'])
    op.create_index(op.f('ix_import_records_status'), 'import_records', ['status'])
    op.create_index(op.f('ix_import_records_import_log_id'), 'import_records', ['import_log_id'])
    op.create_index(
        'ix_import_records_resource_status', 'import_records', ['resource_type', 'status']
    )

    op.create_table(
        'activity_logs',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('actor_ref', sa.String(length=64), nullable=True),
        sa.Column('subject_type', sa.String(length=64), nullable=False),
        sa.Column('subject_id', sa.String(length=64), nullable=False),
        sa.Column('event_type', sa.String(length=32), nullable=False),
        sa.Column('summary', sa.String(length=200), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_activity_logs_actor_ref'), 'activity_logs', ['actor_ref'])
    op.create_index(op.f('ix_activity_logs_event_type'), 'activity_logs', ['event_type'])
    op.create_index(
        'ix_activity_logs_subject_time',
        'activity_logs',
        ['subject_type', 'subject_id', 'created_at'],
    )


def downgrade() -> None:
    op.drop_index('ix_activity_logs_subject_time', table_name='activity_logs')
    op.drop_index(op.f('ix_activity_logs_event_type'), table_name='activity_logs')
    op.drop_index(op.f('ix_activity_logs_actor_ref'), table_name='activity_logs')
    op.drop_table('activity_logs')
    op.drop_index('ix_import_records_resource_status', table_name='import_records')
    op.drop_index(op.f('ix_import_records_import_log_id'), table_name='import_records')
    op.drop_index(op.f('ix_import_records_status'), table_name='import_records')
    op.drop_index(op.f('ix_import_records_resource_type'), table_name='import_records')
    op.drop_table('import_records')
    import_status.drop(op.get_bind(), checkfirst=True)
    op.drop_index(op.f('ix_import_logs_resource_type'), table_name='import_logs')
    op.drop_index(op.f('ix_import_logs_action'), table_name='import_logs')
    op.drop_table('import_logs')
    op.drop_index(op.f('ix_entities_entity_type'), table_name='entities')
    op.drop_table('entities')
    op.drop_index('ix_attribute_values_entity', table_name='attribute_values')
    op.drop_index(op.f('ix_attribute_values_attribute_id'), table_name='attribute_values')
    op.drop_table('attribute_values')
    op.drop_index(op.f('ix_attributes_group'), table_name='attributes')
    op.drop_index(op.f('ix_attributes_slug'), table_name='attributes')
    op.drop_table('attributes')
