"""Tests for DynamoDB schema key builders."""

import pytest

from infraplan import schema
from infraplan.models import ResourceId


class TestKeyBuilders:
    """Tests for partition and sort keys."""

    def test_pk_state(self):
        assert schema.pk_state("prod") == "STATE#prod"

    def test_sk_resource_round_trip(self):
        rid = ResourceId("network", "main")
        assert schema.sk_resource(rid) == "RESOURCE#network.main"
        assert schema.parse_resource_sk("RESOURCE#network.main") == rid

    def test_parse_rejects_other_prefixes(self):
        with pytest.raises(ValueError, match="Invalid resource SK"):
            schema.parse_resource_sk("BUCKET#network.main")


class TestTableDefinition:
    """Tests for get_table_definition."""

    def test_keys(self):
        definition = schema.get_table_definition("my_table")
        assert definition["TableName"] == "my_table"
        assert definition["BillingMode"] == "PAY_PER_REQUEST"
        assert {k["AttributeName"]: k["KeyType"] for k in definition["KeySchema"]} == {
            "PK": "HASH",
            "SK": "RANGE",
        }
