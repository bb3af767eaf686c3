"""
Flask CLI commands for storefront maintenance.

Commands:
- flask init-db: Create the browser storage tables
- flask purge-legacy-storage: Remove unscoped keys left by older releases
"""

import click
from sqlalchemy.exc import SQLAlchemyError

from pharmacy.database import create_all, get_session
from pharmacy.models import StorageEntry
from pharmacy.services.browser_storage import LEGACY_UNSCOPED_KEYS


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create missing browser storage tables."""
        create_all()
        click.echo(click.style('✅ Browser storage tables are ready.', fg='green'))

    @app.cli.command('purge-legacy-storage')
    @click.option('--dry-run', is_flag=True, help='Only count the rows that would be removed')
    def purge_legacy_storage(dry_run):
        """
        Delete unscoped shipping address entries for every browser.

        Scoped entries (last_shipping_address_<user_id>) are kept.
        """
        db_session = get_session()
        query = db_session.query(StorageEntry).filter(StorageEntry.key.in_(LEGACY_UNSCOPED_KEYS))
        count = query.count()

        if dry_run:
            click.echo(f'{count} legacy entr{"y" if count == 1 else "ies"} would be removed.')
            return

        try:
            query.delete(synchronize_session=False)
            db_session.commit()
        except SQLAlchemyError as e:
            db_session.rollback()
            click.echo(click.style(f'❌ Could not purge legacy entries: {str(e)}', fg='red'))
            raise click.Abort()

        click.echo(click.style(f'✅ Removed {count} legacy entr{"y" if count == 1 else "ies"}.', fg='green'))
