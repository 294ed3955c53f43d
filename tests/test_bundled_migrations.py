from datetime import datetime, timedelta, timezone

from sqlalchemy import inspect, text

from gq_migrate.database.database import foreign_key_violations


def _columns(engine, table):
    return {c["name"]: c for c in inspect(engine).get_columns(table)}


def test_full_history_on_fresh_database(bundled_runner, engine):
    result = bundled_runner.migrate(engine)

    assert result.ok
    assert result.applied == [0, 1, 2, 3, 4, 5, 6]
    assert bundled_runner.current_version(engine) == 6
    tables = set(inspect(engine).get_table_names())
    assert {"users", "adhoc_tokens", "session_tokens", "lobby", "games"} <= tables
    assert "user_tokens" not in tables
    assert "BLOB" in str(_columns(engine, "users")["id"]["type"]).upper()
    assert _columns(engine, "session_tokens")["expires_at"]["nullable"] is False


def test_second_run_is_a_no_op(bundled_runner, engine):
    bundled_runner.migrate(engine)

    result = bundled_runner.migrate(engine)

    assert result.applied == []
    assert bundled_runner.pending(engine) == []
    assert bundled_runner.current_version(engine) == 6


def test_token_expiration_backfills_existing_sessions(bundled_runner, engine):
    bundled_runner.migrate(engine, target=1)
    with engine.begin() as connection:
        connection.execute(text("INSERT INTO session_tokens (id, public_key) VALUES (x'01', 'pk1'), (x'02', 'pk2')"))

    started = datetime.now(timezone.utc).replace(tzinfo=None)
    result = bundled_runner.migrate(engine, target=2)

    assert result.applied == [2]
    assert _columns(engine, "session_tokens")["expires_at"]["nullable"] is False
    with engine.connect() as connection:
        values = connection.execute(text("SELECT expires_at FROM session_tokens")).scalars().all()
    assert len(values) == 2
    for value in values:
        expires_at = datetime.strptime(value, "%Y-%m-%d %H:%M:%S")
        assert timedelta(0) <= expires_at - started <= timedelta(hours=1, minutes=5)


def test_user_id_conversion_keeps_lobby_references(bundled_runner, engine, key_generator):
    bundled_runner.migrate(engine, target=4)
    with engine.begin() as connection:
        connection.execute(text("INSERT INTO users (id, nickname) VALUES (1, 'alice'), (2, 'bob')"))
        connection.execute(text("INSERT INTO lobby (id, created_by, player1, player2) VALUES (x'0a', 1, 2, NULL)"))
        connection.execute(text(
            "INSERT INTO adhoc_tokens (id, user_id, secret, signature) VALUES "
            "(x'aa', 2, x'01', x'f1'), (x'bb', 77, x'02', x'f2')"
        ))

    result = bundled_runner.migrate(engine)

    assert result.applied == [5, 6]
    alice = key_generator.generate("users", 1)
    bob = key_generator.generate("users", 2)
    with engine.connect() as connection:
        row = connection.execute(text("SELECT created_by, player1, player2 FROM lobby")).fetchone()
        assert tuple(row) == (alice, bob, None)
        assert connection.execute(text("SELECT user_id FROM adhoc_tokens")).scalars().all() == [bob]
        nicknames = dict(connection.execute(text("SELECT id, nickname FROM users")).fetchall())
        assert nicknames == {alice: "alice", bob: "bob"}
        assert foreign_key_violations(connection) == []


def test_games_reference_converted_users(bundled_runner, engine, key_generator):
    bundled_runner.migrate(engine, target=4)
    with engine.begin() as connection:
        connection.execute(text("INSERT INTO users (id, nickname) VALUES (1, 'alice'), (2, 'bob')"))
    bundled_runner.migrate(engine)

    alice = key_generator.generate("users", 1)
    bob = key_generator.generate("users", 2)
    with engine.begin() as connection:
        connection.execute(
            text("INSERT INTO games (id, created_by, player1, player2) VALUES (x'01', :a, :a, :b)"),
            {"a": alice, "b": bob},
        )
    with engine.connect() as connection:
        assert foreign_key_violations(connection) == []
