"""ZCL frame helpers and coordinator drivers for ZBOSS NCP and ZiGate adapters."""

__version__ = "0.1.0"
__all__ = ["common", "zcl", "zboss_frame", "zboss", "zigate"]