#!/usr/bin/env python3
"""
Basic Apply Example

Demonstrates the infraplan library API with the in-process LocalProvider
and a throwaway state directory.

Run:
    uv run python examples/basic_apply.py

Nothing leaves the process: LocalProvider only fabricates object ids.
"""

import asyncio
import tempfile

from infraplan import (
    EngineOptions,
    FileStateStore,
    LocalProvider,
    Manifest,
    Provisioner,
    ReplacePolicy,
    UnsatisfiableChangeError,
)

MANIFEST = """
resources:
  network:
    main:
      attributes: {cidr_block: %s}
  subnet:
    a:
      attributes:
        network_id: {ref: network.main.id}
        cidr_block: 10.0.1.0/24
  instance:
    web:
      attributes: {subnet_id: {ref: subnet.a.id}}
replace_on:
  network: [cidr_block]
  subnet: [network_id]
"""


async def apply(state_dir: str, cidr: str, policy: ReplacePolicy) -> None:
    manifest = Manifest.from_yaml(MANIFEST % cidr)
    provider = LocalProvider(replace_on=manifest.replace_on, latency=0.05)
    options = EngineOptions(concurrency=2, replace_policy=policy)

    async with Provisioner(provider, FileStateStore(state_dir), options) as p:
        plan = await p.plan(manifest.resources)
        if plan.is_empty:
            print("  (no changes)")
            return
        for step in plan:
            print(f"  {step.key}")

        result = await p.execute(plan)
        print(
            f"  -> {len(result.created)} created, {len(result.updated)} updated, "
            f"{len(result.replaced)} replaced, {len(result.deleted)} deleted"
        )


async def main() -> None:
    with tempfile.TemporaryDirectory() as state_dir:
        print("=== First apply ===")
        await apply(state_dir, "10.0.0.0/16", ReplacePolicy.CREATE_BEFORE_DESTROY)

        print("\n=== Second apply (idempotent) ===")
        await apply(state_dir, "10.0.0.0/16", ReplacePolicy.CREATE_BEFORE_DESTROY)

        print("\n=== New CIDR, create-before-destroy ===")
        await apply(state_dir, "10.1.0.0/16", ReplacePolicy.CREATE_BEFORE_DESTROY)

        print("\n=== New CIDR, destroy-before-create ===")
        try:
            await apply(state_dir, "10.2.0.0/16", ReplacePolicy.DESTROY_BEFORE_CREATE)
        except UnsatisfiableChangeError as e:
            print(f"  refused: {e}")


if __name__ == "__main__":
    asyncio.run(main())
