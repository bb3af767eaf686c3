"""
Wholesale upgrade forms: the customer's request and the admin's rejection.

Document type and size checks live in the wholesale service so they run
before any backend call no matter how the request arrives.
"""
from flask_wtf import FlaskForm
from flask_wtf.file import FileField
from wtforms import StringField, TextAreaField
from wtforms.validators import Length, Optional


class WholesaleUpgradeForm(FlaskForm):
    """Company details and the two supporting documents."""

    company_name = StringField(
        'Company name',
        validators=[Optional(), Length(max=255)],
        render_kw={'placeholder': 'Company name'}
    )

    commercial_register = StringField(
        'Commercial register number',
        validators=[Optional(), Length(max=100)]
    )

    tax_number = StringField(
        'Tax number',
        validators=[Optional(), Length(max=100)],
        render_kw={'placeholder': 'Optional'}
    )

    id_document = FileField('ID document')
    commercial_document = FileField('Commercial register document')


class RejectRequestForm(FlaskForm):
    """Optional reason shown to the customer."""

    reason = TextAreaField(
        'Reason',
        validators=[Optional(), Length(max=500)],
        render_kw={'rows': 3, 'placeholder': 'Reason for rejection (optional)'}
    )
