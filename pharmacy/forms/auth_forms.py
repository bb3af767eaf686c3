"""
Login forms for the storefront and the admin panel.
"""
from flask_wtf import FlaskForm
from wtforms import PasswordField, StringField
from wtforms.validators import DataRequired, Length, Optional


class LoginForm(FlaskForm):
    """Email or phone plus password; used by both login endpoints."""

    identifier = StringField(
        'Email or phone',
        validators=[
            DataRequired(message='Email or phone is required'),
            Length(max=255)
        ],
        render_kw={'placeholder': 'you@example.com', 'autocomplete': 'username'}
    )

    password = PasswordField(
        'Password',
        validators=[DataRequired(message='Password is required')],
        render_kw={'autocomplete': 'current-password'}
    )

    next = StringField('Next', validators=[Optional(), Length(max=500)])
