"""DynamoDB state store."""

import logging
from typing import Any

import aioboto3  # type: ignore[import-untyped]
from botocore.exceptions import ClientError

from . import schema
from .exceptions import StateConflictError, StateCorruptedError
from .models import ResourceId, StateRecord, validate_identifier

logger = logging.getLogger(__name__)


class DynamoDBStateStore:
    """
    Async DynamoDB state store.

    Each workspace is one partition (``PK=STATE#<workspace>``) holding one
    item per resource (``SK=RESOURCE#<kind>.<name>``). Commits are
    conditional on the stored serial being lower than the new one, so two
    runs racing on the same resource cannot silently overwrite each other.

    Args:
        table_name: DynamoDB table name
        workspace: State partition, allowing several environments per table
        region: AWS region (None = boto default)
        endpoint_url: Custom endpoint, e.g. LocalStack
    """

    def __init__(
        self,
        table_name: str = schema.DEFAULT_TABLE_NAME,
        workspace: str = "default",
        region: str | None = None,
        endpoint_url: str | None = None,
    ) -> None:
        self.table_name = table_name
        self.workspace = validate_identifier(workspace, "workspace")
        self.region = region
        self.endpoint_url = endpoint_url
        self._session: aioboto3.Session | None = None
        self._client: Any = None

    async def _get_client(self) -> Any:
        """Get or create the DynamoDB client."""
        if self._client is None:
            self._session = aioboto3.Session()
            self._client = await self._session.client(
                "dynamodb",
                region_name=self.region,
                endpoint_url=self.endpoint_url,
            ).__aenter__()
        return self._client

    async def close(self) -> None:
        """Close the DynamoDB client."""
        if self._client is not None:
            await self._client.__aexit__(None, None, None)
            self._client = None
            self._session = None

    def _key(self, resource_id: ResourceId) -> dict[str, Any]:
        return {
            "PK": {"S": schema.pk_state(self.workspace)},
            "SK": {"S": schema.sk_resource(resource_id)},
        }

    # -------------------------------------------------------------------------
    # Table operations
    # -------------------------------------------------------------------------

    async def create_table(self) -> None:
        """Create the DynamoDB table if it doesn't exist."""
        client = await self._get_client()
        definition = schema.get_table_definition(self.table_name)

        try:
            await client.create_table(**definition)
            # Wait for table to be active
            waiter = client.get_waiter("table_exists")
            await waiter.wait(TableName=self.table_name)
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceInUseException":
                raise

    async def delete_table(self) -> None:
        """Delete the DynamoDB table."""
        client = await self._get_client()
        try:
            await client.delete_table(TableName=self.table_name)
        except ClientError as e:
            if e.response["Error"]["Code"] != "ResourceNotFoundException":
                raise

    # -------------------------------------------------------------------------
    # Record operations
    # -------------------------------------------------------------------------

    async def load(self) -> dict[ResourceId, StateRecord]:
        """Load every record of the workspace, ordered by resource id."""
        client = await self._get_client()
        query_args: dict[str, Any] = {
            "TableName": self.table_name,
            "KeyConditionExpression": "PK = :pk AND begins_with(SK, :sk_prefix)",
            "ExpressionAttributeValues": {
                ":pk": {"S": schema.pk_state(self.workspace)},
                ":sk_prefix": {"S": schema.SK_RESOURCE},
            },
            "ConsistentRead": True,
        }

        records: dict[ResourceId, StateRecord] = {}
        while True:
            response = await client.query(**query_args)
            for item in response.get("Items", []):
                resource_id, record = self._deserialize_record(item)
                records[resource_id] = record
            last_key = response.get("LastEvaluatedKey")
            if not last_key:
                break
            query_args["ExclusiveStartKey"] = last_key

        logger.debug(
            "Loaded %d record(s) from %s/%s", len(records), self.table_name, self.workspace
        )
        return {rid: records[rid] for rid in sorted(records)}

    async def get(self, resource_id: ResourceId) -> StateRecord | None:
        """Read a single record, or None if absent."""
        client = await self._get_client()
        response = await client.get_item(
            TableName=self.table_name,
            Key=self._key(resource_id),
            ConsistentRead=True,
        )
        item = response.get("Item")
        if not item:
            return None
        return self._deserialize_record(item)[1]

    async def commit(self, resource_id: ResourceId, record: StateRecord) -> None:
        """
        Write one record.

        Raises:
            StateConflictError: If the stored serial is not lower than
                ``record.serial``
        """
        client = await self._get_client()
        item = {
            **self._key(resource_id),
            "resource_id": {"S": str(resource_id)},
            "serial": {"N": str(record.serial)},
            "data": {"M": self._serialize_map(record.to_dict())},
        }

        try:
            await client.put_item(
                TableName=self.table_name,
                Item=item,
                ConditionExpression="attribute_not_exists(PK) OR #serial < :serial",
                ExpressionAttributeNames={"#serial": "serial"},
                ExpressionAttributeValues={":serial": {"N": str(record.serial)}},
            )
        except ClientError as e:
            if e.response["Error"]["Code"] == "ConditionalCheckFailedException":
                raise StateConflictError(resource_id, record.serial) from e
            raise
        logger.debug("Committed %s (serial %d)", resource_id, record.serial)

    async def delete(self, resource_id: ResourceId) -> None:
        """Remove one record. A missing record is not an error."""
        client = await self._get_client()
        await client.delete_item(TableName=self.table_name, Key=self._key(resource_id))
        logger.debug("Removed state for %s", resource_id)

    # -------------------------------------------------------------------------
    # Serialization helpers
    # -------------------------------------------------------------------------

    def _deserialize_record(self, item: dict[str, Any]) -> tuple[ResourceId, StateRecord]:
        """Deserialize a DynamoDB item to (resource id, record)."""
        sk = item.get("SK", {}).get("S", "")
        try:
            resource_id = schema.parse_resource_sk(sk)
            data = self._deserialize_map(item.get("data", {}).get("M", {}))
            return resource_id, StateRecord.from_dict(data)
        except (TypeError, ValueError, AttributeError) as e:
            raise StateCorruptedError(f"{self.table_name}/{sk}", e) from e

    def _serialize_map(self, data: dict[str, Any]) -> dict[str, Any]:
        """Serialize a Python dict to DynamoDB map format."""
        return {str(key): self._serialize_value(value) for key, value in data.items()}

    def _serialize_value(self, value: Any) -> dict[str, Any]:
        """Serialize a single value to DynamoDB format."""
        if isinstance(value, str):
            return {"S": value}
        elif isinstance(value, bool):
            return {"BOOL": value}
        elif isinstance(value, (int, float)):
            return {"N": str(value)}
        elif isinstance(value, dict):
            return {"M": self._serialize_map(value)}
        elif isinstance(value, (list, tuple)):
            return {"L": [self._serialize_value(v) for v in value]}
        elif value is None:
            return {"NULL": True}
        return {"S": str(value)}

    def _deserialize_map(self, data: dict[str, Any]) -> dict[str, Any]:
        """Deserialize a DynamoDB map to Python dict."""
        return {key: self._deserialize_value(value) for key, value in data.items()}

    def _deserialize_value(self, value: dict[str, Any]) -> Any:
        """Deserialize a single DynamoDB value."""
        if "S" in value:
            return value["S"]
        elif "N" in value:
            num_str = value["N"]
            try:
                return int(num_str)
            except ValueError:
                return float(num_str)
        elif "BOOL" in value:
            return value["BOOL"]
        elif "M" in value:
            return self._deserialize_map(value["M"])
        elif "L" in value:
            return [self._deserialize_value(v) for v in value["L"]]
        elif "NULL" in value:
            return None
        return None
