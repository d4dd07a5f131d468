"""
Monitoring module for outdoor temperature alerts and background windows
"""

from .threshold import AlertState, ThresholdConfig, ThresholdMonitor, AlertSink, LoggingAlertSink, evaluate
from .background import BackgroundScheduler, BackgroundHost, WindowTask, WindowOutcome, LifecyclePhase
from .window_host import AsyncioWindowHost, AsyncioWindowTask

__all__ = ['AlertState', 'ThresholdConfig', 'ThresholdMonitor', 'AlertSink', 'LoggingAlertSink', 'evaluate',
           'BackgroundScheduler', 'BackgroundHost', 'WindowTask', 'WindowOutcome', 'LifecyclePhase',
           'AsyncioWindowHost', 'AsyncioWindowTask']
