"""
Discovery module for fan controller scanning and transport
"""

from .models import FanCharacteristics, DamperState, DeviceAddress, ScanResult, ScanProgress
from .transport import DeviceTransport, TransportError, TransportErrorKind, FanCommand, Acknowledgment
from .scanner import DeviceScanner, ScanRun

__all__ = ['FanCharacteristics', 'DamperState', 'DeviceAddress', 'ScanResult', 'ScanProgress',
           'DeviceTransport', 'TransportError', 'TransportErrorKind', 'FanCommand', 'Acknowledgment',
           'DeviceScanner', 'ScanRun']
