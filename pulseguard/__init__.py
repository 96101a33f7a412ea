"""Heart-rate deviation monitoring with confirmed, durable emergency alerting.

This package contains the detection, confirmation and delivery logic,
isolated from transports and storage engines for easy testing and reasoning.
"""
