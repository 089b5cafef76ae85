"""
High-Risk Notifications

Forwards model-based high-risk predictions to the configured push
notification sink. Subscribed to EVENT_HIGH_RISK_PREDICTION by the API and
worker on startup; the orchestrator never calls this module directly.
"""

from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

import requests

from core.config import settings
from core.events import EVENT_HIGH_RISK_PREDICTION, subscribe

logger = logging.getLogger(__name__)

NOTIFICATION_TITLE = "Streakguard"
NOTIFICATION_BODY = "Your patterns suggest today may require extra awareness. Tap for insights."
NOTIFICATION_URL = "/urge-prediction"


def build_notification(user_id: str, risk_score: int, reason: str) -> Dict[str, Any]:
    return {
        "userId": user_id,
        "notification": {
            "title": NOTIFICATION_TITLE,
            "body": NOTIFICATION_BODY,
        },
        "data": {
            "type": "pattern_high",
            "riskScore": str(risk_score),
            "reason": reason,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "url": NOTIFICATION_URL,
        },
    }


def send_high_risk_notification(
    user_id: str,
    risk_score: int,
    reason: str = "",
    url: Optional[str] = None,
    **_: Any,
) -> bool:
    """
    Event handler for EVENT_HIGH_RISK_PREDICTION.

    Returns:
        True if the sink accepted the notification, False if no sink is
        configured or delivery failed
    """
    target = url or settings.NOTIFICATION_SINK_URL
    if not target:
        logger.debug("No notification sink configured, skipping high-risk notification")
        return False

    try:
        response = requests.post(
            target,
            json=build_notification(user_id, risk_score, reason),
            timeout=settings.EXTERNAL_API_TIMEOUT,
        )
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"High-risk notification for user {user_id} failed: {e}")
        return False

    logger.info(f"High-risk notification sent for user {user_id} (risk={risk_score})")
    return True


def register_notification_handlers() -> None:
    subscribe(EVENT_HIGH_RISK_PREDICTION, send_high_risk_notification)
