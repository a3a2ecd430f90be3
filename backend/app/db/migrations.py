from sqlalchemy import inspect, text
from sqlalchemy.engine import Engine


def ensure_runtime_schema(engine: Engine) -> None:
    # Lightweight runtime migration for local cache databases created before
    # pending keys and presence tracking existed.
    with engine.begin() as connection:
        inspector = inspect(connection)
        tables = set(inspector.get_table_names())

        if "users" in tables:
            user_columns = {column["name"] for column in inspector.get_columns("users")}
            if "phone_number" not in user_columns:
                connection.execute(text("ALTER TABLE users ADD COLUMN phone_number VARCHAR(20)"))
            if "last_seen" not in user_columns:
                connection.execute(text("ALTER TABLE users ADD COLUMN last_seen DATETIME"))
                connection.execute(text("UPDATE users SET last_seen = created_at WHERE last_seen IS NULL"))
            connection.execute(
                text("CREATE INDEX IF NOT EXISTS ix_users_phone_number ON users(phone_number)")
            )

        for table in ("friend_requests", "group_invitations"):
            if table not in tables:
                continue
            columns = {column["name"] for column in inspector.get_columns(table)}
            if "resolved_at" not in columns:
                connection.execute(text(f"ALTER TABLE {table} ADD COLUMN resolved_at DATETIME"))
            if "pending_key" not in columns:
                connection.execute(text(f"ALTER TABLE {table} ADD COLUMN pending_key VARCHAR(80)"))
                connection.execute(
                    text(
                        f"CREATE UNIQUE INDEX IF NOT EXISTS ix_{table}_pending_key ON {table}(pending_key)"
                    )
                )
