"""Guardian relationships and editable email templates

Revision ID: guardians_and_email_templates
Revises: initial_schema
Create Date: 2026-10-17

"""
from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = 'guardians_and_email_templates'
down_revision = 'initial_schema'
branch_labels = None
depends_on = None


def upgrade():
    with op.batch_alter_table('users') as batch:
        batch.add_column(sa.Column('dependent_email', sa.String(), nullable=True))
        batch.add_column(sa.Column('dependent_phone', sa.String(), nullable=True))

    with op.batch_alter_table('applications') as batch:
        batch.add_column(sa.Column('managing_guardian_id', sa.Integer(), nullable=True))
        batch.create_foreign_key('fk_applications_managing_guardian_id', 'users', ['managing_guardian_id'], ['id'])
        batch.create_index('ix_applications_managing_guardian_id', ['managing_guardian_id'], unique=False)

    op.create_table('guardian_relationships',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('guardian_id', sa.Integer(), nullable=False),
        sa.Column('dependent_id', sa.Integer(), nullable=False),
        sa.Column('relationship_type', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['guardian_id'], ['users.id'], ),
        sa.ForeignKeyConstraint(['dependent_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('guardian_id', 'dependent_id', name='uq_guardian_relationships_pair'),
    )
    op.create_index(op.f('ix_guardian_relationships_guardian_id'), 'guardian_relationships', ['guardian_id'], unique=False)
    op.create_index(op.f('ix_guardian_relationships_dependent_id'), 'guardian_relationships', ['dependent_id'], unique=False)

    op.create_table('email_templates',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('subject', sa.String(), nullable=False),
        sa.Column('body', sa.Text(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('previous_subject', sa.String(), nullable=True),
        sa.Column('previous_body', sa.Text(), nullable=True),
        sa.Column('updated_by_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['updated_by_id'], ['users.id'], ),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )


def downgrade():
    op.drop_table('email_templates')
    op.drop_index(op.f('ix_guardian_relationships_dependent_id'), table_name='guardian_relationships')
    op.drop_index(op.f('ix_guardian_relationships_guardian_id'), table_name='guardian_relationships')
    op.drop_table('guardian_relationships')
    with op.batch_alter_table('applications') as batch:
        batch.drop_index('ix_applications_managing_guardian_id')
        batch.drop_constraint('fk_applications_managing_guardian_id', type_='foreignkey')
        batch.drop_column('managing_guardian_id')
    with op.batch_alter_table('users') as batch:
        batch.drop_column('dependent_phone')
        batch.drop_column('dependent_email')
