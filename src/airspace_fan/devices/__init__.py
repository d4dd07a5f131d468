"""
Device module for per-fan controllers and the house registry
"""

from .controller import FanController, ControllerState, RefreshOutcome, CommandRejected, CommandResult
from .house import HouseRegistry, Device, NoDevice, NO_DEVICE

__all__ = ['FanController', 'ControllerState', 'RefreshOutcome', 'CommandRejected', 'CommandResult',
           'HouseRegistry', 'Device', 'NoDevice', 'NO_DEVICE']
