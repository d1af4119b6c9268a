"""Appointment lifecycle, slot capacity and notification core for a vehicle-repair shop."""

__version__ = "0.1.0"
