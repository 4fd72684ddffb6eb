"""Unit test fixtures."""

import asyncio
from collections.abc import Awaitable
from unittest.mock import patch

import pytest
from moto import mock_aws

from infraplan import (
    InMemoryStateStore,
    LocalProvider,
    Ref,
    Resource,
)


@pytest.fixture
def aws_credentials(monkeypatch):
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")
    # Unset AWS_ENDPOINT_URL to ensure moto intercepts requests
    monkeypatch.delenv("AWS_ENDPOINT_URL", raising=False)


@pytest.fixture
def mock_dynamodb(aws_credentials):
    """Mock DynamoDB for tests."""
    with mock_aws(), _patch_aiobotocore_response():
        yield


def _patch_aiobotocore_response():
    """
    Patch aiobotocore to work with moto's sync responses.

    Moto returns botocore.awsrequest.AWSResponse which has sync content,
    but aiobotocore expects async content. This patch wraps the response
    handling to convert sync content to async.

    See: https://github.com/aio-libs/aiobotocore/discussions/1300
    """
    from aiobotocore import endpoint

    original_convert = endpoint.convert_to_response_dict

    async def patched_convert(http_response, operation_model):
        # If content is not awaitable (moto's sync response), wrap it
        if hasattr(http_response, "_content") and not isinstance(http_response._content, Awaitable):
            fut: asyncio.Future[bytes] = asyncio.Future()
            fut.set_result(http_response.content)
            http_response._content = fut
        return await original_convert(http_response, operation_model)

    return patch.object(endpoint, "convert_to_response_dict", patched_convert)


def network_subnet_instance(
    cidr: str = "10.0.0.0/16",
    subnet_cidr: str = "10.0.1.0/24",
    with_instance: bool = True,
) -> list[Resource]:
    """Network <- subnet <- instance chain, linked by id references."""
    resources = [
        Resource.declare("network", "main", {"cidr_block": cidr}),
        Resource.declare(
            "subnet",
            "a",
            {"network_id": Ref.parse("network.main.id"), "cidr_block": subnet_cidr},
        ),
    ]
    if with_instance:
        resources.append(
            Resource.declare("instance", "web", {"subnet_id": Ref.parse("subnet.a.id")})
        )
    return resources


@pytest.fixture
def nsi():
    """Declared network, subnet and instance."""
    return network_subnet_instance()


@pytest.fixture
def provider():
    """Local provider: a network CIDR change or a subnet rebinding forces replacement."""
    return LocalProvider(
        replace_on={"network": ["cidr_block"], "subnet": ["network_id", "cidr_block"]}
    )


@pytest.fixture
def store():
    """Empty in-memory state store."""
    return InMemoryStateStore()


@pytest.fixture
def make_nsi():
    """Factory for network/subnet/instance declarations with custom CIDRs."""
    return network_subnet_instance
