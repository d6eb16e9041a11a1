"""
Network Device Backup Worker - API
==================================

Process shell around the netbackup core: settings, logging setup, the FastAPI
application exposing the scheduler and the local operator console.
"""
