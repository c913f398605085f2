"""enforce append-only order status history

Revision ID: 0002_status_history_immutability
Revises: 0001_orders
Create Date: 2026-10-18
"""

from alembic import op


revision = "0002_status_history_immutability"
down_revision = "0001_orders"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_order_status_history_mutation()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'order_status_history is append-only; % is not allowed', TG_OP;
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_order_status_history_immutable
        BEFORE UPDATE OR DELETE ON order_status_history
        FOR EACH ROW
        EXECUTE FUNCTION prevent_order_status_history_mutation();
        """
    )
    op.execute(
        """
        CREATE OR REPLACE FUNCTION prevent_order_delete()
        RETURNS trigger
        LANGUAGE plpgsql
        AS $$
        BEGIN
            RAISE EXCEPTION 'orders are never deleted; cancel or reject instead';
        END;
        $$;
        """
    )
    op.execute(
        """
        CREATE TRIGGER trg_orders_no_delete
        BEFORE DELETE ON orders
        FOR EACH ROW
        EXECUTE FUNCTION prevent_order_delete();
        """
    )


def downgrade() -> None:
    op.execute("DROP TRIGGER IF EXISTS trg_orders_no_delete ON orders;")
    op.execute("DROP FUNCTION IF EXISTS prevent_order_delete();")
    op.execute("DROP TRIGGER IF EXISTS trg_order_status_history_immutable ON order_status_history;")
    op.execute("DROP FUNCTION IF EXISTS prevent_order_status_history_mutation();")
