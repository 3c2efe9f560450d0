"""Vendorflow services — store, queue, lifecycle, dispatcher and capabilities."""
