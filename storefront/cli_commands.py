"""
Flask CLI commands for store operations.

Commands:
- flask init-db: Create database tables
- flask create-promo-code: Create a promo code
- flask sweep-reservations: Release expired promo code reservations
"""

import click
from flask import current_app
from storefront.database import create_all, get_session
from storefront.exceptions import BusinessLogicError
from storefront.services.discount_ledger import DiscountLedger
from storefront.services.promo_code_service import create_promo_code


def _split(value):
    return [part.strip() for part in value.split(',') if part.strip()] if value else None


def init_cli_commands(app):
    """Register CLI commands with Flask app."""

    @app.cli.command('init-db')
    def init_db_command():
        """Create all tables."""
        create_all()
        click.echo(click.style('✅ Database tables created', fg='green'))

    @app.cli.command('create-promo-code')
    @click.option('--code', prompt=True, help='Code customers type at checkout')
    @click.option('--type', 'discount_type', type=click.Choice(['percentage', 'fixed']), default='percentage')
    @click.option('--value', 'discount_value', type=int, prompt=True, help='Percent (1-100) or cents')
    @click.option('--description', default=None)
    @click.option('--min-order-cents', type=int, default=None)
    @click.option('--max-discount-cents', type=int, default=None)
    @click.option('--max-uses', type=int, default=None, help='Global cap; unlimited when omitted')
    @click.option('--max-uses-per-user', type=int, default=1)
    @click.option('--games/--no-games', default=True, help='Applies to games')
    @click.option('--merch/--no-merch', default=True, help='Applies to merch')
    @click.option('--new-customers-only', is_flag=True, default=False)
    @click.option('--items', default=None, help='Comma-separated targets, e.g. game:42,merch:7')
    @click.option('--exclude-items', default=None, help='Comma-separated targets to exclude')
    @click.option('--starts-at', type=click.DateTime(), default=None, help='UTC')
    @click.option('--expires-at', type=click.DateTime(), default=None, help='UTC')
    def create_promo_code_command(code, discount_type, discount_value, description, min_order_cents,
                                  max_discount_cents, max_uses, max_uses_per_user, games, merch,
                                  new_customers_only, items, exclude_items, starts_at, expires_at):
        """Create a promo code."""
        db_session = get_session()
        try:
            promo = create_promo_code(
                db_session,
                code=code,
                discount_type=discount_type,
                discount_value=discount_value,
                description=description,
                min_order_cents=min_order_cents,
                max_discount_cents=max_discount_cents,
                max_uses=max_uses,
                max_uses_per_user=max_uses_per_user,
                applies_to_games=games,
                applies_to_merch=merch,
                new_customers_only=new_customers_only,
                specific_item_ids=_split(items),
                excluded_item_ids=_split(exclude_items),
                starts_at=starts_at,
                expires_at=expires_at,
            )
        except BusinessLogicError as e:
            db_session.rollback()
            raise click.ClickException(e.message)

        click.echo(click.style(f'✅ Promo code {promo.code} created', fg='green', bold=True))
        click.echo(f'   ID: {promo.id}')
        click.echo(f'   Max uses: {promo.max_uses if promo.max_uses is not None else "unlimited"}')

    @app.cli.command('sweep-reservations')
    def sweep_reservations_command():
        """Release promo code reservations whose checkout was abandoned."""
        db_session = get_session()
        ledger = DiscountLedger(db_session, ttl_seconds=current_app.config.get('PROMO_RESERVATION_TTL_SECONDS', 900))
        try:
            released = ledger.sweep_expired()
            db_session.commit()
        except Exception:
            db_session.rollback()
            raise
        click.echo(f'Released {released} expired reservation(s)')
