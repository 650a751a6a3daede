#!/usr/bin/env python3
"""
crmsync Terminal CLI
Command-line interface over the query outbox and the bulk sync.
"""

import json
import logging
import sys
import click

from crmsync.engine import dedup, handlers, sync
from crmsync.models import CATEGORIES
from crmsync.logging_config import configure_logging, log_call


def _echo_json(data) -> None:
    click.echo(json.dumps(data, indent=2, default=str, ensure_ascii=False))


def _finish(status: int, body: dict) -> None:
    """Print a handler body; exit non-zero for 4xx/5xx."""
    if status >= 400:
        logging.getLogger("crmsync").warning(f"cli | handler returned {status}: {body.get('message')}")
        click.echo(f"Error ({status}): {body.get('message') or body.get('error')}", err=True)
        _echo_json(body)
        sys.exit(1)
    _echo_json(body)


@click.group()
def cli():
    """crmsync - WooCommerce to Pipedrive sync outbox"""
    configure_logging()


# =============================================================================
# QUERIES COMMANDS
# =============================================================================

@cli.group()
def queries():
    """Inspect, send and update queued queries"""
    pass


@queries.command('list')
@click.option('--category', type=click.Choice(CATEGORIES), help='Filter by category')
@click.option('--state', help='Filter by state (comma-separated for several)')
@click.option('--source', help='Filter by source (user, order, product)')
@click.option('--source-id', type=int, help='Filter by source id')
@click.option('--hook', help='Filter by hook label')
@click.option('--page', default=1, help='Page number (default: 1)')
@click.option('--per-page', default=None, type=int, help='Page size, -1 for all')
@click.option('--order', type=click.Choice(['ASC', 'DESC']), default='DESC', show_default=True)
@log_call
def queries_list(category, state, source, source_id, hook, page, per_page, order):
    """List queries"""
    status, body = handlers.list_queries({
        'category': category,
        'state': state,
        'source': source,
        'source_id': source_id,
        'hook': hook,
        'page': page,
        'per_page': per_page,
        'order': order,
    })
    if status >= 400:
        _finish(status, body)
        return

    items = body['data']
    pagination = body['pagination']
    if not items:
        click.echo("No queries found.")
        return

    click.echo(
        f"\nPage {page}/{pagination['total_pages']} "
        f"({pagination['total_items']} queries):\n"
    )
    click.echo(f"{'ID':<7} {'Category':<13} {'Source':<12} {'State':<10} {'Target':<9} {'Hook':<30}")
    click.echo("-" * 85)

    for q in items:
        source_ref = f"{q['source']}#{q['source_id']}"
        click.echo(
            f"{q['id']:<7} {q['category']:<13} {source_ref[:11]:<12} "
            f"{q['state']:<10} {str(q['target_id'] or ''):<9} {(q['hook'] or '')[:29]:<30}"
        )


@queries.command('show')
@click.argument('query_id', type=int)
@log_call
def queries_show(query_id):
    """Show full query details"""
    status, body = handlers.get_query(query_id)

    if status == 204:
        logging.getLogger("crmsync").warning(f"queries_show | query_id={query_id} not found")
        click.echo(f"Query ID {query_id} not found.", err=True)
        sys.exit(1)
    if status >= 400:
        _finish(status, body)
        return

    q = body['data']
    click.echo(f"\n{'='*80}")
    click.echo(f"QUERY #{q['id']}: {q['category']} from {q['source']} #{q['source_id']}")
    click.echo(f"{'='*80}")
    click.echo(f"Hook:        {q['hook'] or '(not set)'}")
    click.echo(f"State:       {q['state']}")
    click.echo(f"Method:      {q['method']}")
    click.echo(f"Target ID:   {q['target_id'] or '(not linked)'}")
    click.echo(f"User ID:     {q['user_id'] or '(none)'}")
    click.echo(f"Valid:       {q['is_valid']}")
    click.echo(f"Sendable:    {q['can_be_sent']}")
    click.echo(f"Errors:      {q['additional_data'].get('total_error', 0)}")
    click.echo(f"Last error:  {q['additional_data'].get('last_error') or '(none)'}")
    click.echo(f"Created:     {q['additional_data'].get('created_at')}")
    click.echo(f"Sent:        {q['additional_data'].get('sended_at') or '(never)'}")

    click.echo(f"\n{'='*80}")
    click.echo("FIELDS")
    click.echo(f"{'='*80}")
    for item in q['payload'].get('data', []):
        click.echo(f"  {item['key']:<20} {str(item['value'])[:55]}")

    click.echo(f"\n{'='*80}")
    click.echo("TRACEBACK")
    click.echo(f"{'='*80}")
    traceback = q['additional_data'].get('traceback') or []
    if not traceback:
        click.echo("No traceback entries yet.")
    for entry in traceback:
        mark = '✓' if entry.get('success') else '✗'
        click.echo(f"  {mark} [{entry.get('date')}] {entry.get('step')}: {entry.get('message') or ''}")
    click.echo()


@queries.command('send')
@click.argument('query_id', type=int)
@click.option('--via-gateway', is_flag=True, help='Let the gateway forward asynchronously')
@log_call
def queries_send(query_id, via_gateway):
    """Send one query now"""
    status, body = handlers.send_query(query_id, direct_to_target=not via_gateway)
    if status < 400:
        click.echo(f"✓ {body.get('message')}")
    _finish(status, body)


@queries.command('cancel')
@click.argument('query_id', type=int)
@log_call
def queries_cancel(query_id):
    """Cancel a query"""
    status, body = handlers.update_query(query_id, {'cancel': True})
    if status == 204:
        click.echo(f"Query ID {query_id} not found.", err=True)
        sys.exit(1)
    _finish(status, body)


@queries.command('update')
@click.argument('query_id', type=int)
@click.option('--target-id', type=int, help='CRM id returned for this query')
@click.option('--traceback', 'traceback_json', help='JSON list of traceback events')
@log_call
def queries_update(query_id, target_id, traceback_json):
    """Apply a gateway update (CRM id, traceback events) to a query"""
    body = {}
    if target_id:
        body['pipedrive_response'] = {'id': target_id}
    if traceback_json:
        try:
            body['traceback'] = json.loads(traceback_json)
        except ValueError as e:
            click.echo(f"Error: --traceback is not valid JSON: {e}", err=True)
            sys.exit(1)

    status, response = handlers.update_query(query_id, body)
    if status == 204:
        click.echo(f"Query ID {query_id} not found.", err=True)
        sys.exit(1)
    _finish(status, response)


# =============================================================================
# TRIGGERS
# =============================================================================

@cli.command('trigger')
@click.argument('hook_key')
@click.argument('category', type=click.Choice(CATEGORIES))
@click.argument('source_id', type=int)
@click.option('--send-now', is_flag=True, help='Send the resulting query immediately')
@log_call
def trigger(hook_key, category, source_id, send_now):
    """Fire a domain event (e.g. profile_update person 12)"""
    try:
        query = dedup.handle_trigger(hook_key, category, source_id, send_now=send_now)
    except ValueError as e:
        logging.getLogger("crmsync").warning(f"trigger failed for {hook_key} {category} #{source_id}: {e}")
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if query is None:
        if dedup.is_deferred(hook_key, source_id):
            click.echo(f"Cart update for order #{source_id} deferred: the latest one is processed once the cart stops changing.")
            return
        click.echo("Nothing to do (no enabled hook).")
        return
    click.echo(f"✓ Query ID {query.id} ({query.state}) represents this change")


# =============================================================================
# SYNC COMMANDS
# =============================================================================

@cli.group('sync')
def sync_group():
    """Bulk resynchronization of users and orders"""
    pass


@sync_group.command('run')
@click.option('--retry', is_flag=True, help='Resume even if a run is flagged as running')
@log_call
def sync_run(retry):
    """Run the bulk sync in the foreground"""
    status, body = handlers.run_sync(retry=retry, show_progress=True)
    _finish(status, body)


@sync_group.command('start')
@click.option('--retry', is_flag=True, help='Resume from the saved position')
@log_call
def sync_start(retry):
    """Start the bulk sync on a background thread"""
    _, body = handlers.start_sync(retry=retry)
    click.echo(body['message'])


@sync_group.command('progress')
@log_call
def sync_progress():
    """Show sync progress and counters"""
    _, body = handlers.sync_progress()
    counters = body['sync_additional_datas']

    click.echo(f"\n{'='*60}")
    click.echo(f"SYNC {'RUNNING' if body['running'] else 'IDLE'}")
    click.echo(f"{'='*60}")
    click.echo(f"Users:       {body['sync_progress_users']}%  "
               f"({counters['current_user_index']}/{counters['total_users']})")
    click.echo(f"Orders:      {body['sync_progress_orders']}%  "
               f"({counters['current_order_index']}/{counters['total_orders']})")
    click.echo(f"Persons:     {counters['total_person_done']} sent, "
               f"{counters['total_person_uptodate']} up to date, {counters['total_person_errors']} errors")
    click.echo(f"Deals:       {counters['total_order_done']} sent, "
               f"{counters['total_order_uptodate']} up to date, {counters['total_order_errors']} errors")
    click.echo(f"Last sync:   {body['last_sync'] or '(never)'}")
    click.echo(f"Heartbeat:   {body['last_heartbeat'] or '(none)'}")
    if body['last_error']:
        click.echo(f"Last error:  {body['last_error']}")
    click.echo()


@sync_group.command('stop')
@log_call
def sync_stop():
    """Ask a running sync to stop"""
    sync.stop_sync()
    click.echo("✓ Stop requested")


@sync_group.command('watchdog')
@log_call
def sync_watchdog():
    """Restart the sync if its heartbeat went stale (run from cron)"""
    if sync.watchdog_check():
        click.echo("Stale sync restarted from its saved position.")
    else:
        click.echo("Sync healthy or idle.")


@cli.command('sweep')
@log_call
def sweep():
    """Resend every TODO/ERROR query (run from cron)"""
    stats = sync.send_pending_queries(show_progress=True)
    if stats['skipped']:
        click.echo(f"Sweep skipped: {stats['skipped']}")
        return
    click.echo(f"\n✓ {stats['success']} sent, {stats['error']} failed, {stats['total']} total")


# =============================================================================
# DATABASE
# =============================================================================

@cli.group()
def db():
    """Database maintenance"""
    pass


@db.command('init')
@log_call
def db_init():
    """Create the crmsync tables"""
    from crmsync.db.connection import init_schema

    try:
        init_schema()
    except Exception as e:
        logging.getLogger("crmsync").error(f"db init failed: {e}", exc_info=True)
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    click.echo("✓ Schema ready")


# =============================================================================
# MAIN
# =============================================================================

if __name__ == '__main__':
    cli()
