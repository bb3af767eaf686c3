"""
Account forms.
"""
from flask_wtf import FlaskForm
from wtforms import StringField, TextAreaField
from wtforms.validators import DataRequired, Length, Optional


class ShippingAddressForm(FlaskForm):
    """Last shipping address, remembered per customer on this browser."""

    full_name = StringField('Full name', validators=[DataRequired(message='Name is required'), Length(max=255)])
    phone = StringField('Phone', validators=[DataRequired(message='Phone is required'), Length(max=50)])
    address = StringField('Address', validators=[DataRequired(message='Address is required'), Length(max=500)])
    city = StringField('City', validators=[DataRequired(message='City is required'), Length(max=100)])
    postal_code = StringField('Postal code', validators=[Optional(), Length(max=20)])
    notes = TextAreaField('Notes', validators=[Optional(), Length(max=500)])

    def to_address(self):
        return {
            name: (getattr(self, name).data or '').strip()
            for name in ('full_name', 'phone', 'address', 'city', 'postal_code', 'notes')
        }
