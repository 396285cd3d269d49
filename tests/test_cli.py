from backoffice.models import AdminUser


def _run(app, *args):
    return app.test_cli_runner().invoke(args=["admin", *args])


def test_admin_lifecycle(app, client):
    result = _run(app, "create", "--email", "Ops@Studio.test", "--name", "Ops", "--password", "s3cret-pass")
    assert result.exit_code == 0, result.output
    assert "email=ops@studio.test" in result.output

    dup = _run(app, "create", "--email", "ops@studio.test", "--name", "Ops", "--password", "x")
    assert dup.exit_code != 0
    assert "Admin already exists" in dup.output

    login = {"email": "ops@studio.test", "password": "s3cret-pass"}
    assert client.post("/api/admin/auth/login", json=login).status_code == 200

    assert _run(app, "set-password", "--email", "ops@studio.test", "--password", "n3w-pass").exit_code == 0
    assert client.post("/api/admin/auth/login", json=login).status_code == 401
    assert client.post("/api/admin/auth/login", json={**login, "password": "n3w-pass"}).status_code == 200

    assert _run(app, "deactivate", "--email", "ops@studio.test").exit_code == 0
    assert client.post("/api/admin/auth/login", json={**login, "password": "n3w-pass"}).status_code == 401

    listing = _run(app, "list")
    assert "ops@studio.test" in listing.output and "inactive" in listing.output

    with app.app_context():
        assert AdminUser.query.count() == 1


def test_unknown_admin(app):
    result = _run(app, "deactivate", "--email", "ghost@studio.test")
    assert result.exit_code != 0
    assert "No admin with email" in result.output


def test_invalid_email(app):
    result = _run(app, "create", "--email", "not-an-email", "--name", "X", "--password", "pw")
    assert result.exit_code != 0
    assert "Invalid email" in result.output


def test_blank_password_is_rejected(app):
    result = _run(app, "create", "--email", "ops@studio.test", "--name", "Ops", "--password", "   ")
    assert result.exit_code == 1
    assert "Password is required" in result.output
    assert isinstance(result.exception, SystemExit)

    _run(app, "create", "--email", "ops@studio.test", "--name", "Ops", "--password", "s3cret-pass")
    reset = _run(app, "set-password", "--email", "ops@studio.test", "--password", "")
    assert reset.exit_code == 1
    assert "Password is required" in reset.output

    with app.app_context():
        assert AdminUser.query.one().check_password("s3cret-pass")
