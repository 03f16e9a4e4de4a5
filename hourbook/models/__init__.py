"""
Hourbook
SQLAlchemy extension instance shared by every model module.

Usage:
    from hourbook.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
