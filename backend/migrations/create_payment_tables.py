"""
Database Migration: Create Payment Reconciliation Tables

Creates the Casso transaction ledger and the idempotency table, and adds
the payment columns the reconciliation service writes to orders.

Postgres only; local SQLite databases are created by init_db().
"""

import asyncio
import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import text
from database.connection import get_engine, dispose_engine


SQL_STATEMENTS = [
    # Casso transaction ledger
    """
    CREATE TABLE IF NOT EXISTS public.casso_transactions (
        id VARCHAR(36) PRIMARY KEY,
        casso_id VARCHAR(100) NOT NULL UNIQUE,
        tid VARCHAR(100),

        amount BIGINT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        "when" TIMESTAMPTZ,
        bank_sub_acc_id VARCHAR(100),
        cusum_balance BIGINT,

        -- Match verdict
        order_id VARCHAR(36),
        order_number VARCHAR(40),
        match_status VARCHAR(20) NOT NULL DEFAULT 'pending',
        match_note TEXT,
        matched_at TIMESTAMPTZ,

        processed BOOLEAN NOT NULL DEFAULT false,
        processed_at TIMESTAMPTZ,
        processed_by VARCHAR(100),

        raw_data JSONB,

        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),

        CONSTRAINT casso_transactions_status_check
            CHECK (match_status IN ('pending', 'matched', 'unmatched', 'error'))
    )
    """,

    # Idempotency: one row per transfer that settled an order
    """
    CREATE TABLE IF NOT EXISTS public.processed_transactions (
        transaction_id VARCHAR(100) PRIMARY KEY,
        order_id VARCHAR(36) NOT NULL UNIQUE,
        order_number VARCHAR(40) NOT NULL,
        amount BIGINT NOT NULL,
        processed_by VARCHAR(100) NOT NULL DEFAULT 'system',
        processed_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,

    # Payment facet on orders
    "ALTER TABLE public.orders ADD COLUMN IF NOT EXISTS payment_status VARCHAR(30) NOT NULL DEFAULT 'pending'",
    "ALTER TABLE public.orders ADD COLUMN IF NOT EXISTS payment_transaction_id VARCHAR(100)",
    "ALTER TABLE public.orders ADD COLUMN IF NOT EXISTS paid_at TIMESTAMPTZ",
    "ALTER TABLE public.orders ADD COLUMN IF NOT EXISTS loyalty_points_awarded INTEGER NOT NULL DEFAULT 0",

    # Indexes for casso_transactions
    "CREATE INDEX IF NOT EXISTS ix_casso_transactions_status_when ON public.casso_transactions(match_status, \"when\")",
    "CREATE INDEX IF NOT EXISTS ix_casso_transactions_order_number ON public.casso_transactions(order_number)",
    "CREATE INDEX IF NOT EXISTS ix_casso_transactions_created_at ON public.casso_transactions(created_at)",

    # Indexes for orders
    "CREATE INDEX IF NOT EXISTS ix_orders_payment_status_created ON public.orders(payment_status, created_at)",
    "CREATE INDEX IF NOT EXISTS ix_orders_payment_transaction_id ON public.orders(payment_transaction_id)",
]


async def create_tables():
    """Create the payment reconciliation tables."""
    print("Creating payment reconciliation tables...")

    async with get_engine().begin() as conn:
        for i, sql in enumerate(SQL_STATEMENTS):
            await conn.execute(text(sql))
            print(f"  ✓ Statement {i+1}/{len(SQL_STATEMENTS)} executed")

    await dispose_engine()
    print("\n✅ Payment reconciliation tables created successfully!")


if __name__ == "__main__":
    asyncio.run(create_tables())
