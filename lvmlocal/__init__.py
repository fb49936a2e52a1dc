"""Node-local LVM controllers, a rate-limited work queue, CSI response builders and usage reporting."""

__version__ = "0.1.0"