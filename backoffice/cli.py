import click
from flask.cli import with_appcontext
from sqlalchemy import func

from backoffice.errors import ValidationError
from backoffice.extensions import db
from backoffice.models import AdminUser
from backoffice.utils.validators import is_valid_email, normalize_email


def _set_password(user: AdminUser, password: str) -> None:
    try:
        user.set_password(password)
    except ValidationError as e:
        raise click.ClickException(e.message) from e


def _find_admin(email: str) -> AdminUser:
    user = db.session.execute(
        db.select(AdminUser).where(func.lower(AdminUser.email) == normalize_email(email))
    ).scalar_one_or_none()
    if user is None:
        raise click.ClickException(f"No admin with email {email}")
    return user


@click.group()
def admin():
    """Admin account provisioning."""


@admin.command("create")
@click.option("--email", required=True)
@click.option("--name", required=True)
@click.password_option()
@with_appcontext
def admin_create(email, name, password):
    email = normalize_email(email)
    if not is_valid_email(email):
        raise click.ClickException("Invalid email")
    if db.session.query(AdminUser).filter(func.lower(AdminUser.email) == email).count():
        raise click.ClickException("Admin already exists")

    user = AdminUser(email=email, name=name.strip(), is_active=True)
    _set_password(user, password)
    db.session.add(user)
    db.session.commit()
    click.echo(f"Admin created id={user.id} email={user.email}")


@admin.command("set-password")
@click.option("--email", required=True)
@click.password_option()
@with_appcontext
def admin_set_password(email, password):
    user = _find_admin(email)
    _set_password(user, password)
    db.session.commit()
    # Existing sessions stay valid until they expire; rotate ADMIN_SESSION_SECRET to end them now
    click.echo(f"Password updated for {user.email}")


@admin.command("deactivate")
@click.option("--email", required=True)
@with_appcontext
def admin_deactivate(email):
    user = _find_admin(email)
    user.is_active = False
    db.session.commit()
    click.echo(f"Admin deactivated id={user.id} email={user.email}")


@admin.command("list")
@with_appcontext
def admin_list():
    for user in db.session.query(AdminUser).order_by(AdminUser.id):
        state = "active" if user.is_active else "inactive"
        click.echo(f"{user.id}\t{user.email}\t{user.name}\t{state}")


def register_cli(app):
    app.cli.add_command(admin)
