# Directory: tests/
# Filename: conftest.py

from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from utils.scheduler import CallbackScheduler, VirtualClock


class ImmediateExecutor:
    """Runs submitted work inline; done-callbacks fire before submit() returns."""

    def __init__(self):
        self.submitted = []

    def submit(self, fn, *args, **kwargs):
        self.submitted.append((fn, args, kwargs))
        future = Future()
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def shutdown(self, wait=True):
        pass


class ManualExecutor:
    """Holds submitted work until the test completes it, for ordering races."""

    def __init__(self):
        self.futures = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.futures.append((future, fn, args, kwargs))
        return future

    def complete(self, index=0):
        future, fn, args, kwargs = self.futures[index]
        future.set_result(fn(*args, **kwargs))

    def shutdown(self, wait=True):
        pass


@pytest.fixture
def virtual_clock():
    return VirtualClock()


@pytest.fixture
def scheduler(virtual_clock):
    return CallbackScheduler(clock=virtual_clock, logger_instance=MagicMock())


@pytest.fixture
def immediate_executor():
    return ImmediateExecutor()


@pytest.fixture
def manual_executor():
    return ManualExecutor()
