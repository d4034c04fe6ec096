"""
OpEx Hub
SQLAlchemy models package.

The shared ``db`` extension lives here so model and service modules can do
``from opexhub.models import db`` without importing the app factory.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
