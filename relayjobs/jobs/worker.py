"""
Stream consumer delivering broker messages to controllers.
"""

import asyncio
import os
import socket
from typing import Any

from relayjobs.config.logging import get_logger
from relayjobs.config.settings import Settings
from relayjobs.core.registries import ControllerRegistry
from relayjobs.jobs.broker import Broker
from relayjobs.jobs.controller import JobController

logger = get_logger(__name__)


class JobConsumer:
    """
    Reads every controller's topic through a consumer group and hands each
    message to the controller's ``receive``.

    Every delivery is acknowledged whatever its outcome. Processing results
    are recorded on the job record, and records that never finish are
    picked up again by the retry scan.
    """

    def __init__(
        self,
        controllers: ControllerRegistry,
        broker: Broker,
        settings: Settings,
    ):
        self.controllers = controllers
        self.broker = broker
        self.block_ms = settings.broker_block_ms
        self.batch_size = settings.broker_batch_size
        self.consumer_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.running = False

    async def start(self) -> None:
        """Subscribe to every topic and consume until stopped."""
        if self.running:
            raise RuntimeError("Consumer is already running")

        for controller in self.controllers:
            await self.broker.subscribe(controller.topic, controller.name)

        self.running = True
        logger.info(
            "Starting job consumer",
            consumer_id=self.consumer_id,
            controllers=self.controllers.list(),
            batch_size=self.batch_size,
        )

        try:
            await asyncio.gather(
                *(self._consume_loop(controller) for controller in self.controllers)
            )
        finally:
            self.running = False

    async def stop(self) -> None:
        """Stop after the current poll."""
        logger.info("Stopping job consumer", consumer_id=self.consumer_id)
        self.running = False

    async def _consume_loop(self, controller: JobController) -> None:
        while self.running:
            try:
                await self.poll_once(controller)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(
                    "Error in consumer loop",
                    consumer_id=self.consumer_id,
                    job=controller.name,
                )
                await asyncio.sleep(5)  # Back off on errors

    async def poll_once(self, controller: JobController) -> int:
        """Read and handle one batch for a controller; returns its size."""
        messages = await self.broker.read(
            controller.topic,
            controller.name,
            self.consumer_id,
            count=self.batch_size,
            block_ms=self.block_ms,
        )
        for message_id, fields in messages:
            await self._handle(controller, message_id, fields)
        return len(messages)

    async def _handle(
        self, controller: JobController, message_id: str, fields: dict[str, Any]
    ) -> None:
        try:
            await controller.receive(fields)
        except Exception:
            logger.exception(
                "Message delivery failed",
                job=controller.name,
                message_id=message_id,
            )
        finally:
            await self.broker.ack(controller.topic, controller.name, message_id)
