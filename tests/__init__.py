"""
Test suite for the Appointment Scheduler.

Contains unit tests for the scheduling services and integration tests for the API.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
