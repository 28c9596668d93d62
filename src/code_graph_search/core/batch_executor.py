"""Batched prepared-statement execution.

Attaching an embedding to every node means thousands of parameterized
``SET`` statements, each binding a large vector. Kuzu's memory grows with
long-lived prepared-statement bindings, so the parameter list is executed in
small sub-batches: each sub-batch gets a fresh statement that is released
before the next one is prepared, with a scheduler yield in between.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import Any

from loguru import logger

from ..config.settings import BatchConfig
from .graph_engine import GraphEngine

SleepFunc = Callable[[float], Awaitable[Any]]


class BatchedStatementExecutor:
    """Execute one statement against many parameter sets in sub-batches."""

    def __init__(
        self,
        engine: GraphEngine,
        config: BatchConfig | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        """Initialize executor.

        Args:
            engine: Graph engine owning the connection
            config: Sub-batch size and inter-batch pause
            sleep: Awaitable used for the inter-batch pause
                (``asyncio.sleep`` by default; injectable for tests)
        """
        self.engine = engine
        self.config = config or BatchConfig()
        self._sleep = sleep or asyncio.sleep

    async def execute_batched(
        self, statement: str, params_list: Sequence[dict[str, Any]]
    ) -> int:
        """Execute ``statement`` once per parameter set, in order.

        Args:
            statement: Cypher statement with ``$name`` placeholders
            params_list: Parameter sets, executed sequentially

        Returns:
            Number of executed parameter sets

        Raises:
            PreparedStatementError: If the engine cannot prepare the statement;
                the whole call is aborted, nothing is retried
            Exception: Any execution error from the engine, after the current
                statement has been released
        """
        if not params_list:
            return 0

        await self.engine.initialize()

        batch_size = self.config.batch_size
        total = len(params_list)
        executed = 0

        for start in range(0, total, batch_size):
            sub_batch = params_list[start : start + batch_size]

            # Fresh statement per sub-batch, released even if an execution fails
            with self.engine.prepared(statement, sub_batch[0]) as stmt:
                for params in sub_batch:
                    self.engine.execute_statement(stmt, params)
                    executed += 1

            logger.trace(f"Executed sub-batch {start // batch_size + 1} ({executed}/{total})")

            # Let the runtime reclaim the released statement before the next one
            if start + batch_size < total:
                await self._sleep(self.config.pause_seconds)

        logger.debug(f"Batched execution complete: {executed} statements")
        return executed
