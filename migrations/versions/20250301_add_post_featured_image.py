"""
Add posts.featured_image (inline data:image/ URLs).

Deployments created before this revision may also receive the column from the
readiness gate's inline repair, so the upgrade checks before adding it.

Revision ID: cms_featured_image_20250301
Revises: cms_initial_20250101
Create Date: 2025-03-01
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'cms_featured_image_20250301'
down_revision = 'cms_initial_20250101'
branch_labels = None
depends_on = None


def upgrade() -> None:
    columns = {c['name'] for c in sa.inspect(op.get_bind()).get_columns('posts')}
    if 'featured_image' not in columns:
        op.add_column('posts', sa.Column('featured_image', sa.Text(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table('posts') as batch_op:
        batch_op.drop_column('featured_image')
