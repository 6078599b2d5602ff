# Ensure tests import the local `edge_gateway` package first, even when the
# project has not been installed into the environment.
import os
import sys

import pytest

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)


@pytest.fixture(autouse=True)
def reset_gateway():
    """Drop the process-wide gateway so each test builds its own from config."""
    from edge_gateway.proxy.route import set_gateway

    yield
    set_gateway(None)
