# Overview: Flask extension instances for database, migrations, and order notifications.

from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate

from .services.notification_service import EventNotifier

db = SQLAlchemy()
migrate = Migrate()
notifier = EventNotifier()
