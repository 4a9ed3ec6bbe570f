"""
Telesync package — polls PostgreSQL for new IoT telemetry rows and pushes
them to a BI push-dataset endpoint.

A high-water-mark timestamp kept in the ``sync_state`` table decides which
rows are new.  The service runs a scheduled incremental cycle and exposes
an HTTP trigger for manual syncs and full initial loads.
"""
