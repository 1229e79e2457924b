"""Delivery of pipeline state to connected clients."""
