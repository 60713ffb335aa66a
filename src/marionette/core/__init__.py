"""Marionette Core — config, logging, metrics."""
