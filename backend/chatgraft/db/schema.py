"""Database schema DDL. All tables use CREATE IF NOT EXISTS for idempotency."""

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS phantom_messages (
    conversation_id TEXT PRIMARY KEY,
    messages TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bookmarks (
    conversation_id TEXT NOT NULL,
    name TEXT NOT NULL,
    leaf_uuid TEXT NOT NULL,
    created_at TEXT NOT NULL,
    PRIMARY KEY (conversation_id, name)
);

CREATE TABLE IF NOT EXISTS conversation_cache (
    conversation_id TEXT PRIMARY KEY,
    name TEXT,
    model TEXT,
    project_uuid TEXT,
    updated_at TEXT,
    synced_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS message_cache (
    message_uuid TEXT NOT NULL,
    conversation_id TEXT NOT NULL,
    sender TEXT NOT NULL,
    text TEXT NOT NULL,
    created_at TEXT,
    PRIMARY KEY (conversation_id, message_uuid),
    FOREIGN KEY (conversation_id) REFERENCES conversation_cache(conversation_id)
);

CREATE VIRTUAL TABLE IF NOT EXISTS message_cache_fts USING fts5(
    text,
    content='message_cache',
    content_rowid='rowid'
);

CREATE TRIGGER IF NOT EXISTS message_cache_ai AFTER INSERT ON message_cache BEGIN
    INSERT INTO message_cache_fts(rowid, text) VALUES (new.rowid, new.text);
END;

CREATE TRIGGER IF NOT EXISTS message_cache_ad AFTER DELETE ON message_cache BEGIN
    INSERT INTO message_cache_fts(message_cache_fts, rowid, text) VALUES ('delete', old.rowid, old.text);
END;

CREATE TRIGGER IF NOT EXISTS message_cache_au AFTER UPDATE ON message_cache BEGIN
    INSERT INTO message_cache_fts(message_cache_fts, rowid, text) VALUES ('delete', old.rowid, old.text);
    INSERT INTO message_cache_fts(rowid, text) VALUES (new.rowid, new.text);
END;
"""
