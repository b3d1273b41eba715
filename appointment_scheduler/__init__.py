"""
Appointment Scheduler

A FastAPI-based service where registered users propose appointments to one
another, attach short audio messages, and accept, decline or cancel the
appointments they are party to.
"""

__version__ = "1.0.0"
