"""Ocea resident portal exporter.

Polls the Ocea "espace résident" portal for water, hot water and heating
meters, keeps an always-increasing absolute index per fluid and exposes it
to Prometheus, Home Assistant (MQTT) and InfluxDB.
"""

__version__ = "1.0.0"
