"""
Messaging CLI

Command-line interface for Messaging Gateway administration.

Commands:
- init-db: Create the messaging tables
- connect / list-integrations / disconnect: Manage a user's channel integrations
- test-connection: Validate provider credentials
- send-test: Send a message through the gateway
- list-conversations / set-status: Inspect and manage conversations
- add-rule / add-team / add-agent: Routing setup
- stream-info: Show information about a Redis stream
"""

import asyncio
import json
from typing import Optional
from uuid import UUID

import typer
from rich import print as rprint
from rich.console import Console
from rich.table import Table

app = typer.Typer(
    name="messaging-cli",
    help="Messaging Gateway CLI",
)

console = Console()


def get_db():
    """Get database session."""
    from basecore.db import get_db as _get_db
    return next(_get_db())


def get_redis():
    """Get Redis client."""
    from basecore.redis import get_redis_client
    return get_redis_client()


def _parse_uuid(value: str, label: str) -> UUID:
    try:
        return UUID(value)
    except ValueError:
        rprint(f"[red]Invalid {label}: {value}[/red]")
        raise typer.Exit(1)


def _parse_config(config_json: Optional[str], pairs: Optional[list[str]]) -> dict:
    """Merge a JSON object and KEY=VALUE pairs into one config dict."""
    config: dict = {}
    if config_json:
        try:
            config.update(json.loads(config_json))
        except ValueError as e:
            rprint(f"[red]Invalid --config JSON: {e}[/red]")
            raise typer.Exit(1)
    for pair in pairs or []:
        key, sep, value = pair.partition("=")
        if not sep:
            rprint(f"[red]Expected KEY=VALUE, got: {pair}[/red]")
            raise typer.Exit(1)
        config[key.strip()] = value
    return config


@app.command()
def init_db():
    """
    Create the messaging tables on DATABASE_URL.
    """
    db = get_db()

    try:
        from messaging_gateway.persistence.models import MessagingBase

        MessagingBase.metadata.create_all(bind=db.get_bind())
        rprint("[green]Messaging tables created[/green]")

    finally:
        db.close()


@app.command()
def connect(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    platform: str = typer.Argument(..., help="Platform (whatsapp, telegram, slack, ...)"),
    name: str = typer.Argument(..., help="Integration name, unique per user and platform"),
    provider: Optional[str] = typer.Option(None, help="Provider (defaults to the platform's only provider)"),
    config: Optional[str] = typer.Option(None, help="Config as a JSON object"),
    set_: Optional[list[str]] = typer.Option(None, "--set", "-s", help="Config entry KEY=VALUE (repeatable)"),
    inactive: bool = typer.Option(False, "--inactive", help="Save without activating"),
):
    """
    Connect (or update) a channel integration.

    Secret fields are encrypted with MESSAGING_ENCRYPTION_KEY. Activating an
    integration deactivates the user's other integrations on the platform.
    """
    user_uuid = _parse_uuid(user_id, "user ID")
    values = _parse_config(config, set_)

    db = get_db()

    try:
        from basecore.settings import get_settings
        from messaging_gateway.persistence.models import IntegrationStatus
        from messaging_gateway.persistence.repo import MessagingRepository
        from messaging_gateway.providers.configs import IntegrationConfigError, default_provider
        from messaging_gateway.service.integrations import IntegrationCipher, IntegrationService

        service = IntegrationService(
            MessagingRepository(db),
            IntegrationCipher(get_settings().MESSAGING_ENCRYPTION_KEY),
        )

        try:
            integration, created = service.upsert(
                user_uuid,
                platform,
                provider or default_provider(platform),
                name,
                values,
                status=IntegrationStatus.INACTIVE if inactive else IntegrationStatus.ACTIVE,
            )
        except IntegrationConfigError as e:
            db.rollback()
            rprint(f"[red]Invalid integration: {e}[/red]")
            raise typer.Exit(1)

        db.commit()

        rprint(f"[green]Successfully {'created' if created else 'updated'} integration:[/green]")
        rprint(f"  ID: {integration.id}")
        rprint(f"  Platform: {integration.platform}")
        rprint(f"  Provider: {integration.provider}")
        rprint(f"  Status: {integration.status}")

    finally:
        db.close()


@app.command()
def list_integrations(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    platform: Optional[str] = typer.Option(None, help="Filter by platform"),
):
    """
    List a user's integrations.
    """
    user_uuid = _parse_uuid(user_id, "user ID")
    db = get_db()

    try:
        from messaging_gateway.persistence.repo import MessagingRepository

        integrations = MessagingRepository(db).list_integrations(user_uuid, platform)

        if not integrations:
            rprint("[yellow]No integrations found[/yellow]")
            raise typer.Exit(0)

        table = Table(title="Integrations")
        table.add_column("ID", style="dim")
        table.add_column("Platform")
        table.add_column("Provider")
        table.add_column("Name")
        table.add_column("Status")
        table.add_column("Last Error")

        for integration in integrations:
            table.add_row(
                str(integration.id),
                integration.platform,
                integration.provider,
                integration.name,
                integration.status,
                integration.last_error or "-",
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def disconnect(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    integration_id: str = typer.Argument(..., help="Integration UUID"),
    delete: bool = typer.Option(False, "--delete", help="Delete instead of deactivating"),
    force: bool = typer.Option(False, "--force", "-f", help="Do not ask for confirmation"),
):
    """
    Deactivate (or delete) an integration.
    """
    user_uuid = _parse_uuid(user_id, "user ID")
    integration_uuid = _parse_uuid(integration_id, "integration ID")
    db = get_db()

    try:
        from basecore.settings import get_settings
        from messaging_gateway.persistence.repo import MessagingRepository
        from messaging_gateway.service.integrations import IntegrationCipher, IntegrationService

        repo = MessagingRepository(db)
        integration = repo.get_integration(user_uuid, integration_uuid)
        if not integration:
            rprint(f"[red]No integration found: {integration_id}[/red]")
            raise typer.Exit(1)

        if delete and not force:
            confirm = typer.confirm(f"Delete {integration.platform} integration '{integration.name}'?")
            if not confirm:
                rprint("[yellow]Cancelled[/yellow]")
                raise typer.Exit(0)

        service = IntegrationService(repo, IntegrationCipher(get_settings().MESSAGING_ENCRYPTION_KEY))
        if delete:
            service.delete(user_uuid, integration_uuid)
        else:
            service.deactivate(user_uuid, integration_uuid)
        db.commit()

        rprint(f"[green]Integration {'deleted' if delete else 'deactivated'} successfully[/green]")

    finally:
        db.close()


@app.command()
def test_connection(
    platform: str = typer.Argument(..., help="Platform"),
    provider: Optional[str] = typer.Option(None, help="Provider (defaults to the platform's only provider)"),
    config: Optional[str] = typer.Option(None, help="Config as a JSON object"),
    set_: Optional[list[str]] = typer.Option(None, "--set", "-s", help="Config entry KEY=VALUE (repeatable)"),
):
    """
    Validate a config and check its credentials with the provider.
    """
    from basecore.settings import get_settings
    from messaging_gateway.providers.configs import IntegrationConfigError, default_provider, parse_integration_config
    from messaging_gateway.providers.registry import build_default_registry

    values = _parse_config(config, set_)

    try:
        provider = provider or default_provider(platform)
        typed = parse_integration_config(platform, provider, values)
    except IntegrationConfigError as e:
        rprint(f"[red]Invalid config: {e}[/red]")
        raise typer.Exit(1)

    registry = build_default_registry(timeout=get_settings().PROVIDER_TIMEOUT_SECONDS)
    adapter = registry.get(typed.platform, provider)
    if adapter is None:
        rprint(f"[red]Unsupported provider: {provider}[/red]")
        raise typer.Exit(1)

    async def check():
        try:
            return await adapter.test_connection(typed)
        finally:
            await registry.aclose()

    result = asyncio.run(check())

    if result.success:
        rprint("[green]Connection OK[/green]")
        for key, value in result.info.items():
            rprint(f"  {key}: {value}")
    else:
        rprint("[red]Connection failed[/red]")
        rprint(f"  Error: {result.error}")
        raise typer.Exit(1)


@app.command()
def send_test(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    platform: str = typer.Argument(..., help="Platform to send on"),
    to: str = typer.Argument(..., help="Recipient (phone number, chat id, channel, address...)"),
    text: str = typer.Option("Hello from the Messaging Gateway!", help="Message text"),
    conversation_id: Optional[str] = typer.Option(None, help="Record the message on this conversation"),
):
    """
    Send a test message through the user's active integration.
    """
    user_uuid = _parse_uuid(user_id, "user ID")
    conversation_uuid = _parse_uuid(conversation_id, "conversation ID") if conversation_id else None
    db = get_db()

    try:
        from basecore.settings import get_settings
        from messaging_gateway.providers.base import OutboundMessage
        from messaging_gateway.providers.registry import build_default_registry
        from messaging_gateway.service.gateway import create_gateway
        from messaging_gateway.streams.producer import MessagingStreamProducer

        settings = get_settings()
        producer = MessagingStreamProducer(get_redis(), max_len=settings.STREAM_MAX_LEN)
        registry = build_default_registry(producer=producer, timeout=settings.PROVIDER_TIMEOUT_SECONDS)
        gateway = create_gateway(db, registry, producer=producer, settings=settings)

        message = OutboundMessage(platform=platform, to=to, content=text, conversation_id=conversation_uuid)

        async def send():
            try:
                response = await gateway.send_message(user_uuid, message)
                await gateway.dispatcher.drain()
                return response
            finally:
                await registry.aclose()

        response = asyncio.run(send())

        if response.success:
            rprint("[green]Message sent successfully![/green]")
            rprint(f"  Message ID: {response.message_id}")
        else:
            rprint("[red]Failed to send message[/red]")
            rprint(f"  Error: {response.error}")
            rprint(f"  Code: {response.error_code}")
            raise typer.Exit(1)

    finally:
        db.close()


@app.command()
def list_conversations(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    status: Optional[str] = typer.Option(None, help="Filter by status (open, pending, escalated, closed)"),
    platform: Optional[str] = typer.Option(None, help="Filter by platform"),
    limit: int = typer.Option(20, help="Maximum number of conversations to show"),
):
    """
    List conversations for a user.
    """
    user_uuid = _parse_uuid(user_id, "user ID")
    db = get_db()

    try:
        from messaging_gateway.persistence.models import ConversationStatus
        from messaging_gateway.persistence.repo import MessagingRepository

        repo = MessagingRepository(db)

        status_filter = None
        if status:
            try:
                status_filter = ConversationStatus(status)
            except ValueError:
                rprint(f"[yellow]Unknown status: {status}[/yellow]")

        conversations = repo.list_conversations(
            user_id=user_uuid,
            status=status_filter,
            platform=platform,
            limit=limit,
        )

        if not conversations:
            rprint("[yellow]No conversations found[/yellow]")
            raise typer.Exit(0)

        table = Table(title=f"Conversations for user {user_id[:8]}...")
        table.add_column("ID", style="dim")
        table.add_column("Platform")
        table.add_column("Customer")
        table.add_column("Status")
        table.add_column("Priority")
        table.add_column("Category")
        table.add_column("Messages")
        table.add_column("Last Message")

        for conv in conversations:
            customer = repo.get_customer_by_id(user_uuid, conv.customer_id)
            table.add_row(
                str(conv.id),
                conv.platform,
                (customer.display_name or customer.external_id) if customer else "-",
                conv.status,
                conv.priority,
                conv.category,
                str(conv.message_count),
                conv.last_message_at.strftime("%Y-%m-%d %H:%M") if conv.last_message_at else "-",
            )

        console.print(table)

    finally:
        db.close()


@app.command()
def set_status(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    conversation_id: str = typer.Argument(..., help="Conversation UUID"),
    status: str = typer.Argument(..., help="New status (open, pending, escalated, closed)"),
):
    """
    Change a conversation's status as an agent.
    """
    user_uuid = _parse_uuid(user_id, "user ID")
    conversation_uuid = _parse_uuid(conversation_id, "conversation ID")
    db = get_db()

    try:
        from messaging_gateway.persistence.models import ConversationStatus
        from messaging_gateway.persistence.repo import MessagingRepository
        from messaging_gateway.routing.conversation import Actor, ConversationRouter, InvalidTransitionError

        try:
            target = ConversationStatus(status)
        except ValueError:
            rprint(f"[red]Unknown status: {status}[/red]")
            raise typer.Exit(1)

        repo = MessagingRepository(db)
        conversation = repo.get_conversation(user_uuid, conversation_uuid)
        if not conversation:
            rprint(f"[red]No conversation found: {conversation_id}[/red]")
            raise typer.Exit(1)

        try:
            changed = ConversationRouter(repo).transition(conversation, target, Actor.AGENT)
        except InvalidTransitionError as e:
            rprint(f"[red]{e}[/red]")
            raise typer.Exit(1)

        db.commit()

        if changed:
            rprint(f"[green]Conversation is now {target.value}[/green]")
        else:
            rprint(f"[yellow]Conversation is already {target.value}[/yellow]")

    finally:
        db.close()


@app.command()
def add_rule(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    name: str = typer.Argument(..., help="Rule name"),
    priority: int = typer.Option(0, help="Evaluation order, highest first"),
    keyword: Optional[list[str]] = typer.Option(None, "--keyword", "-k", help="Match if any keyword is present (repeatable)"),
    category: Optional[str] = typer.Option(None, help="Match classified category"),
    match_priority: Optional[str] = typer.Option(None, help="Match classified priority"),
    set_priority: Optional[str] = typer.Option(None, help="Action: override priority"),
    set_category: Optional[str] = typer.Option(None, help="Action: override category"),
    team: Optional[str] = typer.Option(None, help="Action: assign to team (by name)"),
    agent: Optional[str] = typer.Option(None, help="Action: assign to agent (by name)"),
):
    """
    Add a routing rule. Present conditions must all hold; the first matching
    rule wins.
    """
    user_uuid = _parse_uuid(user_id, "user ID")

    conditions = {
        key: value
        for key, value in {"keywords": keyword, "category": category, "priority": match_priority}.items()
        if value
    }
    actions = {
        key: value
        for key, value in {
            "priority": set_priority,
            "category": set_category,
            "assign_to_team": team,
            "assign_to_agent": agent,
        }.items()
        if value
    }
    if not actions:
        rprint("[red]A rule needs at least one action[/red]")
        raise typer.Exit(1)

    db = get_db()

    try:
        from messaging_gateway.persistence.repo import MessagingRepository

        rule = MessagingRepository(db).create_routing_rule(user_uuid, name, priority, conditions, actions)
        db.commit()

        rprint(f"[green]Created routing rule '{rule.name}'[/green]")
        rprint(f"  ID: {rule.id}")
        rprint(f"  Conditions: {json.dumps(conditions)}")
        rprint(f"  Actions: {json.dumps(actions)}")

    finally:
        db.close()


@app.command()
def add_team(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    name: str = typer.Argument(..., help="Team name"),
):
    """
    Add a team.
    """
    user_uuid = _parse_uuid(user_id, "user ID")
    db = get_db()

    try:
        from messaging_gateway.persistence.repo import MessagingRepository

        repo = MessagingRepository(db)
        if repo.get_team_by_name(user_uuid, name):
            rprint(f"[yellow]Team already exists: {name}[/yellow]")
            raise typer.Exit(1)

        team = repo.create_team(user_uuid, name)
        db.commit()
        rprint(f"[green]Created team '{team.name}' ({team.id})[/green]")

    finally:
        db.close()


@app.command()
def add_agent(
    user_id: str = typer.Argument(..., help="User (tenant) UUID"),
    name: str = typer.Argument(..., help="Agent name"),
    team: Optional[str] = typer.Option(None, help="Team name"),
    email: Optional[str] = typer.Option(None, help="Agent email"),
):
    """
    Add an agent, optionally in a team.
    """
    user_uuid = _parse_uuid(user_id, "user ID")
    db = get_db()

    try:
        from messaging_gateway.persistence.repo import MessagingRepository

        repo = MessagingRepository(db)
        if repo.get_agent_by_name(user_uuid, name):
            rprint(f"[yellow]Agent already exists: {name}[/yellow]")
            raise typer.Exit(1)

        team_id = None
        if team:
            found = repo.get_team_by_name(user_uuid, team)
            if not found:
                rprint(f"[red]No team found: {team}[/red]")
                raise typer.Exit(1)
            team_id = found.id

        agent = repo.create_agent(user_uuid, name, team_id=team_id, email=email)
        db.commit()
        rprint(f"[green]Created agent '{agent.name}' ({agent.id})[/green]")

    finally:
        db.close()


@app.command()
def stream_info(
    stream: str = typer.Option("msg:realtime", help="Stream name"),
):
    """
    Show information about a Redis stream.
    """
    redis_client = get_redis()

    try:
        from messaging_gateway.streams.groups import get_stream_info

        info = get_stream_info(redis_client, stream)

        rprint(f"\n[cyan]Stream: {stream}[/cyan]")
        rprint(f"  Length: {info.get('length', 0)}")

        if info.get("first_entry"):
            rprint(f"  First entry: {info['first_entry'][0]}")
        if info.get("last_entry"):
            rprint(f"  Last entry: {info['last_entry'][0]}")

        groups = info.get("groups", [])
        if groups:
            rprint("\n  Consumer Groups:")
            for group in groups:
                rprint(f"    - {group.get('name')}: {group.get('pending')} pending, {group.get('consumers')} consumers")

    except Exception as e:
        rprint(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


if __name__ == "__main__":
    app()
