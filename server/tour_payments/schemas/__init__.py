"""Pydantic schemas for request/response validation."""

from .callback import *  # noqa: F403
from .common import *  # noqa: F403
from .health import *  # noqa: F403
from .payment import *  # noqa: F403
