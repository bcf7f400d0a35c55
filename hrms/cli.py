import json

import click
from flask.cli import with_appcontext

from hrms.errors import ServiceError
from hrms.models.feedback import ENTITY_NAME, FEEDBACK_SCHEMA
from hrms.services.analytics import AnalyticsAggregator
from hrms.services.feedback_store import FeedbackStore
from hrms.services.lifecycle import LifecycleCoordinator
from hrms.tenancy import get_registry
from hrms.utils.validators import iso_utc

# Entities this service knows how to lay out
SCHEMAS = {ENTITY_NAME: FEEDBACK_SCHEMA}


def _store_for(company: str) -> FeedbackStore:
    try:
        return FeedbackStore(get_registry().resolve(company, ENTITY_NAME, FEEDBACK_SCHEMA))
    except ServiceError as exc:
        raise click.ClickException(str(exc))


@click.group()
def tenants():
    """Tenant namespace management."""


@tenants.command("provision")
@click.argument("company_code")
@click.option("--entity", "entities", multiple=True, type=click.Choice(sorted(SCHEMAS)),
              help="Entity to provision (repeatable; default: all)")
@with_appcontext
def tenants_provision(company_code, entities):
    registry = get_registry()
    for name in entities or sorted(SCHEMAS):
        try:
            handle = registry.resolve(company_code, name, SCHEMAS[name])
        except ServiceError as exc:
            raise click.ClickException(str(exc))
        click.echo(f"Provisioned {handle.company_code}/{name} -> {handle.table.name}")


@click.group()
def feedback():
    """Feedback reporting."""


@feedback.command("analytics")
@click.option("--company", required=True)
@click.option("--user", "user_id", default=None, help="Scope counts to one user's involvement")
@with_appcontext
def feedback_analytics(company, user_id):
    aggregator = AnalyticsAggregator(_store_for(company))
    data = aggregator.user_stats(user_id) if user_id else aggregator.tenant_analytics()
    click.echo(json.dumps(data, indent=2))


@feedback.command("overdue")
@click.option("--company", required=True)
@with_appcontext
def feedback_overdue(company):
    records = LifecycleCoordinator(_store_for(company)).list_overdue()
    for r in records:
        due = iso_utc(r.get("due_date")) or "-"
        click.echo(f"{r['id']}\t{due}\t{r.get('status')}\t{r.get('title') or ''}")
    click.echo(f"{len(records)} overdue")


def register_cli(app):
    app.cli.add_command(tenants)
    app.cli.add_command(feedback)
