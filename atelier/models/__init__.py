"""
Atelier Platform — Model Package

Exposes the shared Flask-SQLAlchemy handle. Model modules import ``db`` from
here; ``create_app`` imports every model module so ``db.create_all()`` sees
all tables.
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
