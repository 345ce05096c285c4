"""
Flask extensions shared by the membership service.

Initialised against the app in ``create_app``; models and services import
``db`` from here.
"""
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

db = SQLAlchemy()

migrate = Migrate()
