"""Helpers shared by the meterble packages: config files, logging and MQTT payloads."""
