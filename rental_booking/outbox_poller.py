import asyncio
import logging
from typing import Optional
from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaConnectionError
from sqlalchemy.orm import Session
from sqlalchemy.sql import select

from .database import SessionLocal
from .models import OutboxEvent
from .config import settings

logger = logging.getLogger("outbox_poller")


async def publish_pending_events(db: Session, producer: AIOKafkaProducer, batch_size: int = 100) -> int:
    """
    Sends one batch of pending outbox events to Kafka.
    Events that fail to send stay in the outbox and are retried next round.
    """
    stmt = select(OutboxEvent).where(
        OutboxEvent.status == "PENDING"
    ).order_by(OutboxEvent.id).limit(batch_size).with_for_update()

    pending_events = db.execute(stmt).scalars().all()
    if not pending_events:
        return 0

    logger.info(f"Found {len(pending_events)} pending events in outbox.")
    events_processed = 0
    for event in pending_events:
        try:
            await producer.send_and_wait(
                topic=event.topic,
                key=event.event_type.encode("utf-8"),
                value=event.payload.encode("utf-8")
            )
            db.delete(event)
            events_processed += 1
        except Exception as e:
            logger.error(f"Failed to send event {event.id} to Kafka: {e}")

    if events_processed > 0:
        db.commit()
        logger.info(f"Successfully processed {events_processed} events.")
    return events_processed


async def run_outbox_poller(poll_interval: Optional[int] = None, retry_delay: int = 5, max_retries: int = 5):
    """
    Continuously polls the OutboxEvent table and publishes domain events to Kafka.
    Includes retries for initial Kafka connection.
    """
    poll_interval = poll_interval or settings.OUTBOX_POLL_INTERVAL_SECONDS
    logger.info("Starting outbox poller...")

    producer = None
    retries = 0
    while producer is None and retries < max_retries:
        try:
            producer = AIOKafkaProducer(
                bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS
            )
            await producer.start()
            logger.info(f"Outbox poller connected to Kafka on attempt {retries + 1}.")
            break
        except KafkaConnectionError as e:
            retries += 1
            logger.warning(
                f"Kafka connection attempt {retries}/{max_retries} failed: {e}. Retrying in {retry_delay} seconds...")
            if producer:
                await producer.stop()
                producer = None
            if retries >= max_retries:
                logger.error("Outbox poller failed to connect to Kafka after multiple retries. Exiting.")
                return
            await asyncio.sleep(retry_delay)
        except Exception as e:
            logger.error(f"Unexpected error starting Kafka producer: {e}")
            if producer:
                await producer.stop()
            return

    if producer is None:
        return

    try:
        while True:
            db: Session = SessionLocal()
            try:
                await publish_pending_events(db, producer)
            except Exception as e:
                logger.error(f"Error in poller loop: {e}")
                db.rollback()
            finally:
                db.close()

            await asyncio.sleep(poll_interval)

    except asyncio.CancelledError:
        logger.info("Outbox poller task cancelled.")
    finally:
        if producer:
            logger.info("Stopping Kafka producer...")
            await producer.stop()
        logger.info("Outbox poller shut down.")
