"""DynamoDB schema definitions and key builders for the state table."""

from typing import Any

from .models import ResourceId

DEFAULT_TABLE_NAME = "infraplan_state"

# Key prefixes
STATE_PREFIX = "STATE#"
SK_RESOURCE = "RESOURCE#"


def pk_state(workspace: str) -> str:
    """Build partition key for a workspace's state."""
    return f"{STATE_PREFIX}{workspace}"


def sk_resource(resource_id: ResourceId) -> str:
    """Build sort key for one resource record."""
    return f"{SK_RESOURCE}{resource_id}"


def parse_resource_sk(sk: str) -> ResourceId:
    """Parse the resource id from a record sort key."""
    # SK format: RESOURCE#{kind}.{name}
    if not sk.startswith(SK_RESOURCE):
        raise ValueError(f"Invalid resource SK: {sk}")
    return ResourceId.parse(sk[len(SK_RESOURCE) :])


def get_table_definition(table_name: str) -> dict[str, Any]:
    """
    Get the DynamoDB table definition for CreateTable.

    Returns a dictionary suitable for boto3 create_table().
    """
    return {
        "TableName": table_name,
        "BillingMode": "PAY_PER_REQUEST",
        "AttributeDefinitions": [
            {"AttributeName": "PK", "AttributeType": "S"},
            {"AttributeName": "SK", "AttributeType": "S"},
        ],
        "KeySchema": [
            {"AttributeName": "PK", "KeyType": "HASH"},
            {"AttributeName": "SK", "KeyType": "RANGE"},
        ],
    }
