"""
Cart forms.
"""
from flask_wtf import FlaskForm
from wtforms import IntegerField, StringField
from wtforms.validators import DataRequired, InputRequired, Length, NumberRange, Optional


class AddCartItemForm(FlaskForm):
    """A product to add, with the snapshot shown in the cart."""

    product_id = StringField(
        'Product',
        validators=[DataRequired(message='Product is required')]
    )

    quantity = IntegerField(
        'Quantity',
        default=1,
        validators=[
            Optional(),
            NumberRange(min=1, message='Quantity must be at least 1')
        ]
    )

    name = StringField('Name', validators=[Optional(), Length(max=255)])
    price = StringField('Price', validators=[Optional(), Length(max=32)])
    image_url = StringField('Image', validators=[Optional(), Length(max=1000)])

    def product_snapshot(self):
        product = {'id': self.product_id.data}
        for field_name in ('name', 'price', 'image_url'):
            value = getattr(self, field_name).data
            if value not in (None, ''):
                product[field_name] = value
        return product


class UpdateCartItemForm(FlaskForm):
    """New quantity for a line; zero removes it."""

    quantity = IntegerField(
        'Quantity',
        validators=[
            InputRequired(message='Quantity is required'),
            NumberRange(min=0, message='Quantity cannot be negative')
        ]
    )
