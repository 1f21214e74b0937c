"""Wash bay gateway: register-polled PLC <-> MQTT bridge."""
