#!/usr/bin/env python3
"""
Operations CLI for the signing engine: sweeps, retries and account setup.
"""

import asyncio
from typing import Awaitable, Callable, TypeVar

import click
from sqlalchemy.ext.asyncio import AsyncSession

from signdesk.core.config import get_settings
from signdesk.core.errors import SigningError
from signdesk.core.logging import configure_logging
from signdesk.core.security import create_access_token
from signdesk.models.signing import SigningRequest
from signdesk.models.user import User
from signdesk.services.notification_service import dispatch_pending_notifications
from signdesk.services.orchestrator_factory import build_orchestrator
from signdesk.services.signing_orchestrator import SigningOrchestrator
from signdesk.services.user_service import create_user, get_user_by_email, register_document

T = TypeVar("T")


def get_session_factory():
    from signdesk.db.session import async_session_factory

    return async_session_factory


def _run(operation: Callable[[AsyncSession, SigningOrchestrator], Awaitable[T]]) -> T:
    configure_logging()
    orchestrator = build_orchestrator(get_settings())

    async def runner() -> T:
        try:
            async with get_session_factory()() as session:
                return await operation(session, orchestrator)
        finally:
            await orchestrator.provider.close()

    return asyncio.run(runner())


def _run_session(operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
    configure_logging()

    async def runner() -> T:
        async with get_session_factory()() as session:
            return await operation(session)

    return asyncio.run(runner())


@click.group()
def cli():
    """Sign Desk operations CLI"""


@cli.command("sweep-expired")
def sweep_expired():
    """Persist expiry for active requests past their deadline"""
    expired = _run(lambda session, orchestrator: orchestrator.expire_overdue_requests(session))
    click.echo(f"Expired {expired} signing request(s)")


@cli.command("retry-completions")
def retry_completions():
    """Re-run completion for requests whose signed artifact is still missing"""
    finished = _run(lambda session, orchestrator: orchestrator.pipeline.retry_pending(session))
    click.echo(f"Finished {finished} pending completion(s)")


@cli.command("dispatch-notifications")
def dispatch_notifications():
    """Send pending and retry-due notifications"""

    async def operation(session: AsyncSession, orchestrator: SigningOrchestrator) -> int:
        dispatched = await dispatch_pending_notifications(session, orchestrator.notifier)
        await session.commit()
        return dispatched

    click.echo(f"Dispatched {_run(operation)} notification(s)")


@cli.command("prune-events")
@click.option("--retention-days", type=int, default=None, help="Override the configured ledger retention")
def prune_events(retention_days: int | None):
    """Delete processed-event ledger rows for settled requests past retention"""
    days = retention_days if retention_days is not None else get_settings().processed_event_retention_days
    pruned = _run(lambda session, orchestrator: orchestrator.prune_processed_events(session, retention_days=days))
    click.echo(f"Pruned {pruned} ledger row(s) older than {days} day(s)")


@cli.command("retry-registration")
@click.argument("request_id")
def retry_registration(request_id: str):
    """Re-attempt provider registration on behalf of the request's initiator"""

    async def operation(session: AsyncSession, orchestrator: SigningOrchestrator):
        request = await session.get(SigningRequest, request_id)
        if request is None:
            raise click.ClickException(f"Signing request {request_id} not found")
        initiator = await session.get(User, request.initiator_id)
        return await orchestrator.retry_registration(session, request_id, actor=initiator)

    try:
        request = _run(operation)
    except SigningError as exc:
        raise click.ClickException(exc.message) from exc
    click.echo(f"Request {request.id} registration: {request.registration_status.value}")


@cli.command("create-user")
@click.argument("email")
@click.argument("full_name")
def create_user_command(email: str, full_name: str):
    """Create an active user account"""

    async def operation(session: AsyncSession) -> User:
        if await get_user_by_email(session, email) is not None:
            raise click.ClickException(f"User {email} already exists")
        user = await create_user(session, email=email, full_name=full_name)
        await session.commit()
        return user

    user = _run_session(operation)
    click.echo(f"Created user {user.email} ({user.id})")


@cli.command("add-document")
@click.argument("owner_email")
@click.argument("name")
@click.argument("storage_path")
def add_document(owner_email: str, name: str, storage_path: str):
    """Register a stored PDF, relative to the storage root, for an owner"""

    async def operation(session: AsyncSession):
        owner = await get_user_by_email(session, owner_email)
        if owner is None:
            raise click.ClickException(f"User {owner_email} not found")
        document = await register_document(session, owner=owner, name=name, storage_path=storage_path)
        await session.commit()
        return document

    document = _run_session(operation)
    click.echo(f"Registered document {document.name} ({document.id})")


@cli.command("issue-token")
@click.argument("email")
@click.option("--minutes", type=int, default=None, help="Token lifetime; defaults to the configured expiry")
def issue_token(email: str, minutes: int | None):
    """Print a bearer token for a user"""
    click.echo(create_access_token(email.lower(), expires_minutes=minutes))


if __name__ == "__main__":
    cli()
