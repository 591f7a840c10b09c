"""
Messaging Redis Pub/Sub pour le workflow carte sanitaire.

Deux sens:
- Publication des transitions de statut validées (après commit uniquement)
- Consommation des flux externes: issue de paiement, présence à l'orientation

Redis Pub/Sub ne garantit pas la persistance: un message sans abonné est perdu.
Les handlers consommés doivent donc être idempotents vis-à-vis de l'état courant.

Usage:
    from app.core.events import publish, subscribe

    @subscribe("payments.outcome")
    async def handle_payment_outcome(payload: dict):
        ...

    await publish("healthcard.application.status_changed", {"application_id": 42})
"""

import asyncio
import json
import logging
import uuid
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime

import redis.asyncio as redis
from fastapi import FastAPI
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel

from app.core.config import settings

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Client Redis global (créé au démarrage, réutilisé)
redis_client: redis.Redis | None = None

# Registre des handlers par sujet
handlers: dict[str, list[Callable[[dict], Awaitable[None]]]] = {}

consumer_task: asyncio.Task | None = None


async def init_redis():
    """Initialise le client Redis au démarrage."""
    global redis_client
    redis_client = redis.from_url(
        settings.REDIS_URL,
        db=settings.REDIS_DB,
        decode_responses=True,
        socket_timeout=5.0,
        socket_connect_timeout=5.0,
    )
    await redis_client.ping()
    logger.info(f"Redis client initialisé: {settings.REDIS_URL}")


async def close_redis():
    """Ferme le client Redis proprement."""
    global redis_client
    if redis_client:
        await redis_client.aclose()
        redis_client = None
        logger.info("Redis client fermé")


def build_envelope(subject: str, payload: dict | BaseModel) -> dict:
    """Construit l'enveloppe d'un événement (id, sujet, horodatage, données)."""
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    return {
        "id": str(uuid.uuid4()),
        "subject": subject,
        "timestamp": datetime.now(UTC).isoformat(),
        "data": payload,
    }


async def publish(subject: str, payload: dict | BaseModel, max_retries: int = 3):
    """
    Publie un événement via Redis Pub/Sub.

    Args:
        subject: Sujet de l'événement (ex: "healthcard.application.status_changed")
        payload: Données de l'événement (dict ou Pydantic model)
        max_retries: Nombre maximum de tentatives (défaut: 3)

    Raises:
        Exception: Si toutes les tentatives échouent
    """
    if not settings.EVENTS_ENABLED or redis_client is None:
        logger.debug(f"Publication '{subject}' ignorée: messaging inactif")
        return

    event_data = build_envelope(subject, payload)
    message_id = event_data["id"]

    span_attributes = {
        "messaging.system": "redis",
        "messaging.destination": subject,
        "messaging.message.id": message_id,
    }

    with tracer.start_as_current_span(
        f"publish.{subject}", kind=trace.SpanKind.PRODUCER, attributes=span_attributes
    ) as span:
        for attempt in range(max_retries):
            try:
                await redis_client.publish(subject, json.dumps(event_data))
                logger.debug(f"Événement '{subject}' publié avec ID: {message_id}")
                span.add_event("Événement publié", {"attempt": attempt + 1})
                return
            except Exception as e:
                wait_time = 2**attempt
                if attempt < max_retries - 1:
                    logger.warning(
                        f"Échec publication '{subject}' (tentative {attempt + 1}/{max_retries}): {e}. "
                        f"Retry dans {wait_time}s"
                    )
                    await asyncio.sleep(wait_time)
                else:
                    error_msg = f"Échec définitif publication '{subject}' après {max_retries} tentatives: {e}"
                    logger.error(error_msg, exc_info=True)
                    span.set_status(Status(StatusCode.ERROR, error_msg))
                    span.record_exception(e)
                    raise


def subscribe(subject: str):
    """Décorateur pour enregistrer un handler sur un sujet."""

    def decorator(func: Callable[[dict], Awaitable[None]]) -> Callable[[dict], Awaitable[None]]:
        handlers.setdefault(subject, []).append(func)
        logger.info(f"Handler '{func.__name__}' enregistré pour '{subject}'")
        return func

    return decorator


async def dispatch(subject: str, raw_message: str) -> int:
    """
    Décode un message brut et exécute les handlers du sujet.

    Une erreur dans un handler est journalisée et n'empêche pas les suivants.

    Returns:
        Nombre de handlers exécutés avec succès
    """
    try:
        event_data = json.loads(raw_message)
    except json.JSONDecodeError as e:
        logger.error(f"Erreur décodage JSON pour '{subject}': {e}")
        return 0

    payload = event_data.get("data", {})
    span_attributes = {
        "messaging.system": "redis",
        "messaging.destination": subject,
        "messaging.message.id": event_data.get("id") or "",
    }

    with tracer.start_as_current_span(
        f"consume.{subject}", kind=trace.SpanKind.CONSUMER, attributes=span_attributes
    ) as span:
        executed = 0
        failed = 0
        for handler in handlers.get(subject, []):
            try:
                await handler(payload)
                executed += 1
            except Exception as e:
                failed += 1
                logger.error(
                    f"Erreur handler '{handler.__name__}' pour '{subject}': {e}", exc_info=True
                )
                span.record_exception(e)
        span.set_attributes({"handlers.executed": executed, "handlers.failed": failed})
        return executed


async def consume_messages():
    """Boucle de consommation sur tous les sujets enregistrés via @subscribe()."""
    if not handlers:
        logger.warning("Aucun handler enregistré, consommation Redis inactive")
        return

    pubsub = redis_client.pubsub()
    for subject in handlers:
        await pubsub.subscribe(subject)
        logger.info(f"Abonné au sujet Redis: {subject}")

    try:
        async for message in pubsub.listen():
            if message["type"] == "message":
                await dispatch(message["channel"], message["data"])
    except asyncio.CancelledError:
        logger.info("Consommation Redis annulée")
    finally:
        await pubsub.unsubscribe()
        await pubsub.aclose()


async def start_consuming():
    """Démarre la consommation d'événements Redis."""
    global consumer_task

    if not handlers:
        logger.warning("Aucun handler enregistré, consommation Redis non démarrée")
        return

    consumer_task = asyncio.create_task(consume_messages(), name="redis_consumer")
    logger.info(f"Consommation Redis démarrée pour {len(handlers)} sujet(s)")


async def stop_consuming():
    """Arrête la consommation d'événements Redis."""
    global consumer_task

    if consumer_task and not consumer_task.done():
        consumer_task.cancel()
        try:
            await consumer_task
        except asyncio.CancelledError:
            logger.debug("Tâche de consommation terminée")
        logger.info("Consommation Redis arrêtée")
    consumer_task = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestionnaire de cycle de vie FastAPI pour Redis."""
    if not settings.EVENTS_ENABLED:
        logger.info("Messaging Redis désactivé (EVENTS_ENABLED=false)")
        yield
        return

    await init_redis()
    await start_consuming()
    try:
        yield
    finally:
        await stop_consuming()
        await close_redis()
        logger.info("Redis messaging arrêté proprement")


__all__ = ["dispatch", "lifespan", "publish", "subscribe"]
