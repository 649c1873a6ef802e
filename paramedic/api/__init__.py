"""HTTP presenter: JSON status API and lifecycle event stream."""

from .server import create_app
