#!/usr/bin/env python3
"""Block publishing for the ingestion drivers.

This module wraps blocks in topic envelopes and publishes them with the
chain identifier as ordering key, waiting for the acknowledgment before
reporting the block as produced.
"""

import logging

from .config import TopicConfig
from .exceptions import PublishError
from .models import Block, TopicMessage
from .topic.base import TopicPublisher

logger = logging.getLogger(__name__)


class BlockProducer:
    """Publishes blocks to the topic on behalf of all chain drivers."""

    def __init__(self, publisher: TopicPublisher, topic_config: TopicConfig) -> None:
        """
        Initialize the BlockProducer.

        Args:
            publisher: Topic client used to send messages
            topic_config: Topic naming settings
        """
        self.publisher = publisher
        self.topic_config = topic_config
        self.blocks_published = 0

    async def publish(self, block: Block, schema: str = "blocks") -> int:
        """
        Publish one block and wait for the acknowledgment.

        Args:
            block: Block with its transactions
            schema: Schema the message belongs to (selects the topic when
                topics are split per chain)

        Returns:
            The block number, for cursor advancement

        Raises:
            PublishError: If the topic did not acknowledge the message
        """
        message = TopicMessage.for_block(block)
        topic = self.topic_config.topic_for(block.chain, schema)

        try:
            offset = await self.publisher.publish(topic, message.key, message.serialize())
        except PublishError:
            logger.error(f"Failed to publish {block} to {topic}")
            raise
        except Exception as e:
            logger.error(f"Failed to publish {block} to {topic}: {e}")
            raise PublishError(f"Publishing block {block.number} on {block.chain} failed: {e}") from e

        self.blocks_published += 1
        logger.debug(f"Published {block} to {topic} at offset {offset}")
        return block.number
