"""
Network Device Backup Worker
============================

This package contains the session automation core of the netbackup worker:
- Transport abstraction over SSH and Telnet device shells
- Expect/send engine driving interactive CLI dialogues
- Data-driven device scripts and the session runner executing them
- Per-device job scheduling with a bounded worker pool
- Result reporting and the operator command dispatcher
- Error taxonomy, retry policies and structured logging
"""

__version__ = "1.2.0"
__author__ = "Netbackup Worker Team"
