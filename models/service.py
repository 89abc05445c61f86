from datetime import datetime
from models.db import db

class Service(db.Model):
    __tablename__ = "services"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    description = db.Column(db.Text, nullable=True)
    category = db.Column(db.String(60), nullable=True, index=True)

    provider_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)

    unit_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    price_type = db.Column(db.String(20), nullable=False, default="hourly")
    # price_type values: hourly, daily, weekly, monthly, fixed
    currency = db.Column(db.String(3), nullable=False, default="USD")

    is_active = db.Column(db.Boolean, default=True, nullable=False)

    # aggregate over rated bookings, recomputed on every rating
    rating_average = db.Column(db.Float, nullable=False, default=0)
    rating_count = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
