"""
Shared route dependencies (database handle, assignment selector)
"""

from fastapi import Request

import config


def get_db():
    return config.db


def get_selector(request: Request):
    """AssignmentSelector du process (créé au démarrage dans server.py)"""
    return request.app.state.selector
