"""High-level entry point tying graph, planner, engine and state together."""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterable
from typing import Any

from .engine import Executor
from .graph import ResourceGraph, build_graph
from .models import ApplyResult, EngineOptions, Plan, Resource
from .planner import compile_plan
from .provider import ProviderProtocol
from .state_protocol import StateStoreProtocol
from .validator import validate_graph

logger = logging.getLogger(__name__)


class Provisioner:
    """
    Plans and applies declared resources against a provider and a state store.

    Example:
        async with Provisioner(LocalProvider(), FileStateStore(".state")) as p:
            plan = await p.plan(manifest.resources)
            result = await p.apply(manifest.resources)

    Args:
        provider: Infrastructure provider
        store: State store backend
        options: Engine options (defaults apply when omitted)
    """

    def __init__(
        self,
        provider: ProviderProtocol,
        store: StateStoreProtocol,
        options: EngineOptions | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.options = options or EngineOptions()
        self._executor: Executor | None = None

    async def close(self) -> None:
        """Close the state store."""
        await self.store.close()

    async def __aenter__(self) -> Provisioner:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def graph(self, resources: Iterable[Resource]) -> ResourceGraph:
        """
        Build and validate the resource graph.

        Raises:
            DeclarationError: On duplicates, dangling references or cycles
        """
        graph = build_graph(resources)
        validate_graph(graph)
        return graph

    async def plan(self, resources: Iterable[Resource]) -> Plan:
        """
        Compile the plan reconciling ``resources`` with the stored state.

        Raises:
            DeclarationError: If the declarations are invalid
            UnsatisfiableChangeError: If no safe ordering exists
        """
        graph = self.graph(resources)
        state = await self.store.load()
        logger.debug("Planning %d resource(s) against %d record(s)", len(graph), len(state))
        return compile_plan(graph, state, self.provider, self.options.replace_policy)

    async def apply(
        self, resources: Iterable[Resource], dry_run: bool | None = None
    ) -> ApplyResult:
        """
        Plan and execute.

        Declaration and planning errors are raised before anything is
        touched. Execution errors are reported in the returned result.

        Args:
            resources: Declared resources
            dry_run: Override ``options.dry_run`` for this call
        """
        plan = await self.plan(resources)
        return await self.execute(plan, dry_run=dry_run)

    async def execute(self, plan: Plan, dry_run: bool | None = None) -> ApplyResult:
        """Execute an already compiled plan."""
        options = self.options
        if dry_run is not None and dry_run != options.dry_run:
            options = dataclasses.replace(options, dry_run=dry_run)
        self._executor = Executor(self.provider, self.store, options)
        try:
            return await self._executor.run(plan)
        finally:
            self._executor = None

    def cancel(self) -> None:
        """Stop dispatching new steps of the running apply, if any."""
        if self._executor is not None:
            self._executor.cancel()
