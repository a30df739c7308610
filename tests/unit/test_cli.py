"""Tests for the tally CLI."""

import json

import pytest
from typer.testing import CliRunner

from tally_engine.cli import app


runner = CliRunner()
QUIET = ["--log-level", "ERROR"]


def _write(tmp_path, data):
    path = tmp_path / "scenario.json"
    path.write_text(json.dumps(data))
    return str(path)


@pytest.fixture
def virt_scenario(tmp_path):
    return _write(tmp_path, {
        "products": [{"id": "sku-1", "multiplier": 1, "attributes": {"virt_limit": "3"}}],
        "subscription": {"id": "sub-1", "product_id": "sku-1", "quantity": 10},
    })


class TestQuantityCommands:
    def test_quantity(self):
        result = runner.invoke(app, QUIET + ["quantity", "10", "--multiplier", "3", "--instance-multiplier", "2"])
        assert result.exit_code == 0
        assert "60" in result.output

    def test_quantity_downstream(self):
        result = runner.invoke(app, QUIET + [
            "quantity", "10", "--multiplier", "3", "--instance-multiplier", "2",
            "--upstream-pool-id", "up-1",
        ])
        assert result.exit_code == 0
        assert "30" in result.output

    def test_quantity_bad_instance_multiplier(self):
        result = runner.invoke(app, QUIET + ["quantity", "10", "--instance-multiplier", "two"])
        assert result.exit_code == 1
        assert "INVALID_ATTRIBUTE" in result.output

    def test_virt_quantity(self):
        result = runner.invoke(app, QUIET + ["virt-quantity", "unlimited", "100"])
        assert result.exit_code == 0
        assert "-1" in result.output

    def test_no_bonus_pool(self):
        result = runner.invoke(app, QUIET + ["virt-quantity", "abc", "100"])
        assert result.exit_code == 0
        assert "no bonus pool" in result.output


class TestScenarioCommands:
    def test_synthesize(self, virt_scenario):
        result = runner.invoke(app, QUIET + ["synthesize", virt_scenario, "--json"])
        assert result.exit_code == 0
        assert '"quantity": 10' in result.output
        assert '"quantity": 30' in result.output
        assert '"subscription_sub_key": "derived"' in result.output

    def test_synthesize_table(self, virt_scenario):
        result = runner.invoke(app, QUIET + ["synthesize", virt_scenario])
        assert result.exit_code == 0
        assert "Pools to create" in result.output

    def test_synthesize_requires_subscription(self, tmp_path):
        result = runner.invoke(app, QUIET + ["synthesize", _write(tmp_path, {})])
        assert result.exit_code == 1
        assert "INVALID_SCENARIO" in result.output

    def test_missing_file(self, tmp_path):
        result = runner.invoke(app, QUIET + ["refresh", str(tmp_path / "missing.json")])
        assert result.exit_code == 1
        assert "INVALID_SCENARIO" in result.output

    def test_refresh_updates_existing_pools(self, tmp_path):
        path = _write(tmp_path, {
            "products": [{"id": "sku-1", "attributes": {"virt_limit": "2"}}],
            "subscription": {"id": "sub-1", "product_id": "sku-1", "quantity": 10},
            "pools": [
                {"id": "pool-1", "product_id": "sku-1", "quantity": 5, "subscription_id": "sub-1"},
                {"id": "pool-2", "product_id": "sku-1", "quantity": 10, "subscription_id": "sub-1",
                 "subscription_sub_key": "derived",
                 "attributes": {"derived_pool": "true", "virt_only": "true", "virt_limit": "0"}},
            ],
        })

        result = runner.invoke(app, QUIET + ["refresh", path, "--json"])

        assert result.exit_code == 0
        assert '"created": []' in result.output
        assert '"id": "pool-1"' in result.output
        assert '"id": "pool-2"' in result.output
        assert '"quantity": 20' in result.output

    def test_restack_deletes_empty_stacks(self, tmp_path):
        path = _write(tmp_path, {
            "products": [
                {"id": "sku-1", "attributes": {"stacking_id": "stack-1", "virt_limit": "4"}},
                {"id": "guest", "attributes": {}},
            ],
            "consumers": [{"uuid": "c-1"}],
            "pools": [
                {"id": "src-1", "product_id": "sku-1", "quantity": 2, "subscription_id": "sub-1"},
                {"id": "stack-a", "product_id": "guest", "quantity": 1, "source_stack_id": "stack-1",
                 "source_consumer_uuid": "c-1", "attributes": {"derived_pool": "true"}},
                {"id": "stack-b", "product_id": "guest", "quantity": 1, "source_stack_id": "stack-9",
                 "source_consumer_uuid": "c-1", "attributes": {"derived_pool": "true"}},
            ],
            "entitlements": [{"id": "e-1", "pool_id": "src-1", "consumer_uuid": "c-1"}],
        })

        result = runner.invoke(app, QUIET + ["restack", path, "--delete-empty", "--json"])

        assert result.exit_code == 0
        payload = result.output
        assert payload.index('"updated"') < payload.index('"id": "stack-a"') < payload.index('"deleted"')
        assert payload.index('"deleted"') < payload.index('"id": "stack-b"')
        assert '"quantity": 4' in payload

    def test_restack_lists_only_changed_pools(self, tmp_path):
        path = _write(tmp_path, {
            "products": [
                {"id": "sku-1", "attributes": {"stacking_id": "stack-1", "virt_limit": "4"}},
            ],
            "consumers": [{"uuid": "c-1"}],
            "pools": [
                {"id": "src-1", "product_id": "sku-1", "quantity": 2, "subscription_id": "sub-1",
                 "account_number": "a", "order_number": "o", "contract_number": "c"},
                {"id": "stack-a", "product_id": "sku-1", "quantity": 4, "source_stack_id": "stack-1",
                 "source_consumer_uuid": "c-1", "attributes": {"derived_pool": "true"},
                 "account_number": "a", "order_number": "o", "contract_number": "c"},
            ],
            "entitlements": [{"id": "e-1", "pool_id": "src-1", "consumer_uuid": "c-1"}],
        })

        result = runner.invoke(app, QUIET + ["restack", path, "--json"])

        assert result.exit_code == 0
        assert '"updated": []' in result.output
