"""
DocLedger — SQLAlchemy models package.

The shared ``db`` handle is created here and bound to the app in
``create_app`` via ``db.init_app(app)``.  Model modules import it from
this package:

    from docledger.models import db
"""

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()
