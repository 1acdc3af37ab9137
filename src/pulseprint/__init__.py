"""PulsePrint: monitor network-attached 3D printers over their MQTT report topic."""

__version__ = "0.3.0"
