"""
Shared fixtures and step definitions for BDD tests.

- runner, context: available to all scenario files in this directory
- outbox: the engine runs for real; only its edges are patched
    (store rows, linkage/shop lookups, the settings file, the gateway)
- no_logging: autouse, prevents log file creation during tests
- 'the output contains' / 'the command fails' steps: shared across all feature files
"""

import pytest
from types import SimpleNamespace
from unittest.mock import patch
from click.testing import CliRunner
from pytest_bdd import then, parsers

from crmsync.engine.parameters import DEFAULT_PARAMETERS, _merge
from crmsync.models import QueryPage

CATALOG = [
    {'id': 1, 'key': 'title', 'name': 'Title', 'category': 'deal'},
    {'id': 10, 'key': 'name', 'name': 'Name', 'category': 'person'},
    {'id': 11, 'key': 'email', 'name': 'Email', 'category': 'person'},
]


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def context():
    """Mutable dict shared between Given/When/Then steps within a scenario."""
    return {'settings': {'pipedrive': {'fields': CATALOG}, 'w2p': {'hookList': []}}, 'variables': {}}


@pytest.fixture(autouse=True)
def no_logging():
    with patch("crmsync.cli.main.configure_logging"):
        yield


@pytest.fixture
def outbox(context):
    """In-memory query rows plus patched collaborators; steps fill context."""
    rows = {}

    def save_query(query):
        rows[query.id] = query
        return query.id

    def variable_value(variable, source_id, user_id):
        return context['variables'].get(variable.get('id'))

    with patch('crmsync.engine.parameters.load_parameters',
               side_effect=lambda path=None: _merge(DEFAULT_PARAMETERS, context['settings'])), \
         patch('crmsync.engine.store.get_query', side_effect=lambda query_id: rows.get(query_id)), \
         patch('crmsync.engine.store.save_query', side_effect=save_query), \
         patch('crmsync.engine.store.list_queries', return_value=QueryPage()) as list_queries, \
         patch('crmsync.engine.store.create_query') as create_query, \
         patch('crmsync.engine.collaborators.owner_user_id', return_value=3), \
         patch('crmsync.engine.collaborators.resolve_external_id', return_value=None), \
         patch('crmsync.engine.collaborators.persist_external_id') as persist_link, \
         patch('crmsync.engine.collaborators.get_link', return_value=None), \
         patch('crmsync.engine.collaborators.get_user_data', return_value=None), \
         patch('crmsync.engine.collaborators.get_variable_value', side_effect=variable_value), \
         patch('crmsync.engine.delivery.deliver') as deliver:
        yield SimpleNamespace(
            rows=rows, list_queries=list_queries, create_query=create_query,
            persist_link=persist_link, deliver=deliver,
        )


@then(parsers.parse('the output contains "{text}"'))
def output_contains(context, text):
    assert text in context["result"].output, (
        f"Expected {text!r} in output:\n{context['result'].output}"
    )


@then("the command fails")
def command_fails(context):
    assert context["result"].exit_code != 0, context["result"].output


@then("the command succeeds")
def command_succeeds(context):
    assert context["result"].exit_code == 0, context["result"].output
