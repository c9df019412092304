"""Ops CLI for the billing service using Typer.

Manual intervention tools: inspect balances and ledgers, apply corrections,
audit balance against ledger, and list users holding duplicate subscriptions.
"""

import asyncio
from datetime import timedelta
from pathlib import Path
from typing import Annotated, Optional

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

# Load .env from project directory only
_env_path = Path(__file__).parent.parent / ".env"
load_dotenv(_env_path, override=False)

# CLI styles
STYLE_HEADER = "bold blue"
STYLE_SUCCESS = "bold green"
STYLE_WARNING = "bold yellow"
STYLE_ERROR = "bold red"

app = typer.Typer(
    name="canvas-billing",
    help="Canvas Billing - subscription and credit ledger operations.",
    add_completion=False,
)
console = Console()


def _run(coro):
    """Run a coroutine and dispose the engine afterwards."""
    from canvas_billing.db.session import engine

    async def _wrapped():
        try:
            return await coro
        finally:
            await engine.dispose()

    return asyncio.run(_wrapped())


@app.callback()
def _configure(
    verbose: Annotated[bool, typer.Option(help="Verbose output")] = False,
) -> None:
    from canvas_billing.utils import setup_logging

    setup_logging(verbose)


@app.command()
def seed(
    email: Annotated[str, typer.Option(help="Email of the local user")] = "admin@localhost",
    grant: Annotated[int, typer.Option(help="Credits granted per period")] = 10,
):
    """
    Create a local user with an active subscription.

    Bypasses the payment provider so credits can be tested locally.
    """

    async def _seed():
        from sqlalchemy import select

        from canvas_billing.db.session import async_session_factory, engine
        from canvas_billing.models import Base
        from canvas_billing.models.subscription import Subscription
        from canvas_billing.models.user import User
        from canvas_billing.services.credit_service import grant_if_needed, grant_key
        from canvas_billing.utils import now_utc, to_millis

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        async with async_session_factory() as db:
            result = await db.execute(select(User).where(User.email == email))
            if result.scalar_one_or_none():
                console.print(f"[{STYLE_WARNING}]User {email} already exists.[/{STYLE_WARNING}]")
                return

            user = User(email=email, is_active=True)
            db.add(user)
            await db.flush()

            period_end = now_utc() + timedelta(days=30)
            sub = Subscription(
                user_id=user.id,
                provider_subscription_id=f"sub_local_{user.id}",
                status="active",
                current_period_end=period_end,
                credits_grant_per_period=grant,
            )
            db.add(sub)
            await db.commit()

            result = await grant_if_needed(
                db, sub.id, grant_key(sub.provider_subscription_id, to_millis(period_end)), reason="seed"
            )
            console.print(f"[{STYLE_SUCCESS}]Created user {user.id} ({email}) with subscription {sub.id}[/{STYLE_SUCCESS}]")
            console.print(f"  balance: {result.balance}")

    _run(_seed())


@app.command()
def balance(user_id: int):
    """Show a user's credit balance and entitlement."""

    async def _balance():
        from canvas_billing.db.session import async_session_factory
        from canvas_billing.services.subscription_service import get_credits_balance, has_entitlement

        async with async_session_factory() as db:
            credits = await get_credits_balance(db, user_id)
            entitled = await has_entitlement(db, user_id)
        style = STYLE_SUCCESS if entitled else STYLE_WARNING
        console.print(f"User {user_id}: [{STYLE_HEADER}]{credits}[/{STYLE_HEADER}] credits, "
                      f"[{style}]{'entitled' if entitled else 'not entitled'}[/{style}]")

    _run(_balance())


@app.command()
def ledger(
    user_id: int,
    limit: Annotated[int, typer.Option(help="Number of entries")] = 30,
):
    """Show a user's most recent ledger entries."""

    async def _ledger():
        from canvas_billing.db.session import async_session_factory
        from canvas_billing.services.credit_service import recent_entries

        async with async_session_factory() as db:
            entries = await recent_entries(db, user_id, limit)

        table = Table(title=f"Ledger for user {user_id}")
        for column in ("id", "sub", "type", "amount", "reason", "key", "created"):
            table.add_column(column)
        for entry in entries:
            table.add_row(
                str(entry.id),
                str(entry.subscription_id),
                entry.entry_type,
                f"{entry.amount:+d}",
                entry.reason or "",
                entry.idempotency_key or "",
                entry.created_at.isoformat() if entry.created_at else "",
            )
        console.print(table)

    _run(_ledger())


@app.command()
def adjust(
    subscription_id: int,
    amount: int,
    reason: Annotated[Optional[str], typer.Option(help="Reason recorded in the ledger")] = None,
    key: Annotated[Optional[str], typer.Option(help="Idempotency key")] = None,
):
    """Apply a signed manual credit correction to a subscription."""

    async def _adjust():
        from canvas_billing.db.session import async_session_factory
        from canvas_billing.services.credit_service import adjust_credits

        async with async_session_factory() as db:
            return await adjust_credits(db, subscription_id, amount, reason=reason, idempotency_key=key)

    result = _run(_adjust())
    if not result.ok:
        console.print(f"[{STYLE_ERROR}]Adjustment rejected: {result.error}[/{STYLE_ERROR}]")
        raise typer.Exit(1)
    if result.idempotent:
        console.print(f"[{STYLE_WARNING}]Already applied (key {key}).[/{STYLE_WARNING}]")
        return
    console.print(f"[{STYLE_SUCCESS}]Balance is now {result.balance}[/{STYLE_SUCCESS}]")


@app.command()
def audit(subscription_id: int):
    """Compare a subscription's balance with the sum of its ledger."""

    async def _audit():
        from canvas_billing.db.session import async_session_factory
        from canvas_billing.services.credit_service import audit_balance

        async with async_session_factory() as db:
            return await audit_balance(db, subscription_id)

    report = _run(_audit())
    if report is None:
        console.print(f"[{STYLE_ERROR}]Subscription {subscription_id} not found.[/{STYLE_ERROR}]")
        raise typer.Exit(1)

    console.print(f"balance: {report.balance}  ledger: {report.ledger_total}  entries: {report.entries}")
    if not report.consistent:
        console.print(f"[{STYLE_ERROR}]Balance and ledger disagree by {report.balance - report.ledger_total}[/{STYLE_ERROR}]")
        raise typer.Exit(1)
    console.print(f"[{STYLE_SUCCESS}]Consistent.[/{STYLE_SUCCESS}]")


@app.command()
def token(user_id: int):
    """Print a session token for a user (for API calls from scripts)."""
    from canvas_billing.services.auth_service import create_jwt

    console.print(create_jwt(user_id), soft_wrap=True)


@app.command()
def duplicates():
    """List users holding more than one subscription record."""

    async def _duplicates():
        from canvas_billing.db.session import async_session_factory
        from canvas_billing.services.subscription_service import find_duplicate_owners

        async with async_session_factory() as db:
            return await find_duplicate_owners(db)

    rows = _run(_duplicates())
    if not rows:
        console.print(f"[{STYLE_SUCCESS}]No duplicate subscriptions.[/{STYLE_SUCCESS}]")
        return

    table = Table(title="Users with duplicate subscriptions")
    for column in ("user", "subscription", "provider id", "status", "balance"):
        table.add_column(column)
    for user_id, subs in rows.items():
        for sub in subs:
            table.add_row(str(user_id), str(sub.id), sub.provider_subscription_id, sub.status, str(sub.credits_balance))
    console.print(table)
    raise typer.Exit(1)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
