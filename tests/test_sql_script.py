from gq_migrate.database.migrations.sql_script import parse_script, split_statements


def test_split_drops_comments_and_keeps_statement_without_trailing_semicolon():
    script = """
    -- Basic users table
    create table users(
      -- User id
      id integer primary key autoincrement not null,
      nickname text
    )
    """
    statements = split_statements(script)
    assert len(statements) == 1
    assert statements[0].startswith("create table users(")
    assert "--" not in statements[0]
    assert "nickname text" in statements[0]


def test_split_respects_quotes_and_block_comments():
    script = (
        "INSERT INTO t VALUES ('a;b', 'it''s; fine');\n"
        "/* block; comment */ UPDATE t SET x = \"weird;name\";\n"
        ";;\n"
        "-- trailing comment only\n"
    )
    statements = split_statements(script)
    assert statements == [
        "INSERT INTO t VALUES ('a;b', 'it''s; fine')",
        "UPDATE t SET x = \"weird;name\"",
    ]


def test_split_keeps_trigger_body_whole():
    script = """
    CREATE TRIGGER touch AFTER UPDATE ON users
    BEGIN
      UPDATE users SET nickname = 'x' WHERE id = NEW.id;
      DELETE FROM lobby WHERE created_by = NEW.id;
    END;
    SELECT 1;
    """
    statements = split_statements(script)
    assert len(statements) == 2
    assert statements[0].rstrip().endswith("END")
    assert "DELETE FROM lobby" in statements[0]
    assert statements[1] == "SELECT 1"


def test_parse_script_hoists_foreign_key_pragmas():
    script = """
    PRAGMA foreign_keys = OFF;
    DELETE FROM lobby;
    PRAGMA foreign_keys = ON;
    PRAGMA foreign_key_check;
    """
    parsed = parse_script(script)
    assert parsed.statements == ["DELETE FROM lobby"]
    assert parsed.disable_foreign_keys is True


def test_parse_script_without_pragmas():
    parsed = parse_script("CREATE TABLE a (id integer);")
    assert parsed.disable_foreign_keys is False
    assert parsed.statements == ["CREATE TABLE a (id integer)"]
