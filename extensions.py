"""
Shared Flask extensions (rate limiter, CSRF) created once and bound in create_app().
"""

from __future__ import annotations

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_wtf.csrf import CSRFProtect

limiter = Limiter(key_func=get_remote_address, default_limits=["300 per hour"])

csrf = CSRFProtect()
