"""
Database models - import all models here so Alembic can discover them.
"""
from stylelab.models.optimization_process import OptimizationProcess
from stylelab.models.optimization_round import OptimizationRound
from stylelab.models.subscriber_segment import SubscriberSegment
from stylelab.models.style_email import StyleEmail
from stylelab.models.style_stat import StyleStat
from stylelab.models.subscriber import Subscriber

__all__ = [
    "OptimizationProcess",
    "OptimizationRound",
    "SubscriberSegment",
    "StyleEmail",
    "StyleStat",
    "Subscriber",
]
