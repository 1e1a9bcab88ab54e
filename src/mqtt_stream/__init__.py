"""
mqtt_stream

This package bridges standard input/output with an MQTT broker:
messages on one topic are printed to stdout, and every stdin line
is published to a second topic, with automatic reconnection.
"""
__version__ = "0.1.0"
