"""
Airspace Fan Local Server
Discovery, control and outdoor temperature alerting for networked whole-house fans
"""

__version__ = "1.0.0"
