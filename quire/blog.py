#!/usr/bin/env python3
"""
A single-file minimal blog: post metadata in SQLite, post bodies on disk.
"""

import hashlib
import json
import os
import re
import secrets
import shutil
import sqlite3
import string
import tempfile
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from time import time

import click
from flask import Flask, Response, abort, g, request, session, url_for
from werkzeug.exceptions import HTTPException
from werkzeug.security import gen_salt
from werkzeug.utils import secure_filename

################################################################################
# Imports & constants
################################################################################

ROOT = Path(__file__).parent
DB_FILE = Path(os.environ.get("QUIRE_DB", str(ROOT / "blog.sqlite3")))
ARTICLES_DIR = Path(os.environ.get("QUIRE_ARTICLES_DIR", str(ROOT / "articles")))
UPLOAD_TMP_DIR = Path(
    os.environ.get(
        "QUIRE_UPLOAD_TMP_DIR", str(Path(tempfile.gettempdir()) / "quire-uploads")
    )
)
REBUILD_ON_START = os.environ.get("REBUILD_DB", "0") in {"1", "true"}

SECRET_FILE = ROOT / ".secret_key"
SECRET_KEY = (
    SECRET_FILE.read_text().strip() if SECRET_FILE.exists() else secrets.token_hex(32)
)
SECRET_FILE.write_text(SECRET_KEY)

CONTENT_FILE = "content.html"
INFO_FILE = "info.json"
ASSETS_DIR = "assets"
SNAPSHOT_FIELDS = ("id", "title", "slug", "created_at", "updated_at")

SLUG_MAX_LEN = 100
# ASCII word chars + Cyrillic; everything else collapses into one "-"
_SLUG_STRIP_RE = re.compile(r"[^\w\u0400-\u04FF]+", re.ASCII)

MAX_ASSET_BYTES = 10 * 1024 * 1024  # 10 MiB
COPY_CHUNK = 64 * 1024
ASSET_TOKEN_LEN = 9
_ASSET_TOKEN_CHARS = string.digits + string.ascii_lowercase
_ASSET_EXT_RE = re.compile(r"^\.[a-z0-9]+$")
ASSET_NAME_RE = re.compile(r"^\d+-[0-9a-z]{%d}(\.[a-z0-9]+)?$" % ASSET_TOKEN_LEN)
_POST_DIR_RE = re.compile(r"\d+", re.ASCII)
ASSET_MIMES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
    ".bmp": "image/bmp",
}

SCRYPT_PARAMS = {"n": 16384, "r": 8, "p": 1, "dklen": 64}
SALT_LEN = 32

try:
    __version__ = version("quire")
except PackageNotFoundError:
    __version__ = "0.1.0-dev"


################################################################################
# App
################################################################################
app = Flask(__name__)
app.url_map.strict_slashes = False
app.config.update(
    SECRET_KEY=SECRET_KEY,
    DATABASE=str(DB_FILE),
    ARTICLES_DIR=str(ARTICLES_DIR),
    UPLOAD_TMP_DIR=str(UPLOAD_TMP_DIR),
    MAX_ASSET_BYTES=MAX_ASSET_BYTES,
)
app.config.update(
    SESSION_COOKIE_SAMESITE="Lax",
    SESSION_COOKIE_HTTPONLY=True,
)


###############################################################################
# Errors
###############################################################################
class StoreError(Exception):
    """Base for failures the caller can act on; ``reason`` is machine-readable."""

    reason = "error"
    status = 400

    def __init__(self, message: str, *, reason: str | None = None):
        super().__init__(message)
        self.message = message
        if reason:
            self.reason = reason


class ValidationError(StoreError):
    reason = "invalid"
    status = 400


class SlugTaken(StoreError):
    reason = "slug_taken"
    status = 409


class UsernameTaken(StoreError):
    reason = "username_taken"
    status = 409


class UploadTooLarge(StoreError):
    reason = "too_large"
    status = 413


###############################################################################
# Database helpers
###############################################################################
def get_db():
    if "db" not in g:
        g.db = sqlite3.connect(app.config["DATABASE"])
        g.db.row_factory = sqlite3.Row
    return g.db


@app.teardown_appcontext
def close_db(error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()


def articles_root() -> Path:
    root = Path(app.config["ARTICLES_DIR"])
    root.mkdir(parents=True, exist_ok=True)
    return root


def init_db():
    db = get_db()
    db.executescript(
        """
        ------------------------------------------------------------
        -- 1.  Accounts (exactly one admin in practice)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS users (
            id             INTEGER PRIMARY KEY AUTOINCREMENT,
            username       TEXT UNIQUE NOT NULL,
            password_hash  TEXT NOT NULL,
            salt           TEXT NOT NULL
        );

        ------------------------------------------------------------
        -- 2.  Posts (metadata only – bodies live in articles/<id>/)
        ------------------------------------------------------------
        CREATE TABLE IF NOT EXISTS posts (
            id          INTEGER PRIMARY KEY AUTOINCREMENT,
            title       TEXT NOT NULL,
            slug        TEXT UNIQUE NOT NULL,
            created_at  TEXT NOT NULL,
            updated_at  TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_posts_created ON posts(created_at);
        """
    )
    db.commit()


# -------------------------------------------------------------------------
# Time helpers
# -------------------------------------------------------------------------
def utc_now() -> datetime:
    """Return an *aware* datetime in UTC."""
    return datetime.now(timezone.utc)


def _stamp() -> str:
    return utc_now().isoformat(timespec="seconds")


###############################################################################
# Passwords + users
###############################################################################
def generate_salt() -> str:
    return gen_salt(SALT_LEN)


def hash_password(password: str, salt: str) -> str:
    """Deterministic scrypt digest (hex) of *password* under *salt*."""
    return hashlib.scrypt(
        password.encode(), salt=salt.encode(), **SCRYPT_PARAMS
    ).hex()


def check_password(user, password: str) -> bool:
    digest = hash_password(password, user["salt"])
    return secrets.compare_digest(digest, user["password_hash"])


def count_users(*, db) -> int:
    return db.execute("SELECT COUNT(*) AS c FROM users").fetchone()["c"]


def get_user_by_username(username: str, *, db):
    return db.execute("SELECT * FROM users WHERE username=?", (username,)).fetchone()


def get_user_by_id(user_id: int, *, db) -> dict | None:
    row = db.execute(
        "SELECT id, username FROM users WHERE id=?", (user_id,)
    ).fetchone()
    return dict(row) if row else None


def create_user(username: str, password: str, *, db) -> int:
    if not isinstance(username, str) or not isinstance(password, str):
        raise ValidationError("Username and password must be text.")
    username = username.strip()
    if not username or not password:
        raise ValidationError("Username and password are required.")

    salt = generate_salt()
    try:
        cur = db.execute(
            "INSERT INTO users (username, password_hash, salt) VALUES (?,?,?)",
            (username, hash_password(password, salt), salt),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise UsernameTaken(f"User {username!r} already exists.") from None
    db.commit()
    return cur.lastrowid


###############################################################################
# Slugs
###############################################################################
def slugify(title: str) -> str:
    """
    Lower-case *title*, collapse every run of characters outside
    ``[A-Za-z0-9_]`` + Cyrillic into one ``-``, trim the dashes and cap
    the result at ``SLUG_MAX_LEN`` characters.
    """
    slug = _SLUG_STRIP_RE.sub("-", title.lower()).strip("-")
    return slug[:SLUG_MAX_LEN]


###############################################################################
# Content store (articles/<id>/…)
###############################################################################
def post_dir(post_id: int, *, root: Path) -> Path:
    return Path(root) / str(int(post_id))


def _write_snapshot(path: Path, info: dict) -> None:
    path.write_text(json.dumps(info, indent=2, ensure_ascii=False), encoding="utf-8")


def _read_snapshot(path: Path) -> dict | None:
    """Parsed info.json, or None when it is absent or unreadable."""
    if not path.exists():
        return None
    try:
        info = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as exc:
        app.logger.warning("Unreadable snapshot %s: %s", path, exc)
        return None
    if not isinstance(info, dict):
        app.logger.warning("Snapshot %s is not a JSON object", path)
        return None
    return info


def _materialize(row, content: str, *, root: Path) -> Path:
    folder = post_dir(row["id"], root=root)
    (folder / ASSETS_DIR).mkdir(parents=True, exist_ok=True)
    (folder / CONTENT_FILE).write_text(content, encoding="utf-8")
    _write_snapshot(folder / INFO_FILE, {k: row[k] for k in SNAPSHOT_FIELDS})
    return folder


def _with_content(row, *, root: Path) -> dict:
    post = dict(row)
    content_path = post_dir(row["id"], root=root) / CONTENT_FILE
    post["content"] = (
        content_path.read_text(encoding="utf-8") if content_path.exists() else ""
    )
    return post


###############################################################################
# Posts
###############################################################################
def _validate(title: str | None, content: str | None) -> tuple[str, str]:
    if not isinstance(title, str) or not isinstance(content, str):
        raise ValidationError("Title and content must be text.")
    title = title.strip()
    if not title or not content:
        raise ValidationError("Title and content are required.")
    slug = slugify(title)
    if not slug:
        raise ValidationError("Title needs at least one letter or digit.")
    return title, slug


def create_post(title: str, content: str, *, db, root: Path) -> tuple[int, str]:
    """
    Insert the row, commit, then write ``content.html`` + ``info.json``.

    A slug clash raises :class:`SlugTaken` before anything touches the disk.
    """
    title, slug = _validate(title, content)
    now = _stamp()
    try:
        cur = db.execute(
            "INSERT INTO posts (title, slug, created_at, updated_at) VALUES (?,?,?,?)",
            (title, slug, now, now),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise SlugTaken(f"A post with slug {slug!r} already exists.") from None
    db.commit()

    row = db.execute("SELECT * FROM posts WHERE id=?", (cur.lastrowid,)).fetchone()
    _materialize(row, content, root=root)
    return row["id"], slug


def update_post(
    post_id: int, title: str, content: str, *, db, root: Path
) -> tuple[int, str] | None:
    title, slug = _validate(title, content)
    if not db.execute("SELECT 1 FROM posts WHERE id=?", (post_id,)).fetchone():
        return None

    now = _stamp()
    try:
        db.execute(
            "UPDATE posts SET title=?, slug=?, updated_at=? WHERE id=?",
            (title, slug, now, post_id),
        )
    except sqlite3.IntegrityError:
        db.rollback()
        raise SlugTaken(f"A post with slug {slug!r} already exists.") from None
    db.commit()

    row = db.execute("SELECT * FROM posts WHERE id=?", (post_id,)).fetchone()
    folder = post_dir(post_id, root=root)
    (folder / ASSETS_DIR).mkdir(parents=True, exist_ok=True)
    (folder / CONTENT_FILE).write_text(content, encoding="utf-8")

    info_path = folder / INFO_FILE
    info = _read_snapshot(info_path)
    if info is None:
        info = {}
    # keep whatever else the snapshot carries, refresh the mutable fields
    info.setdefault("id", row["id"])
    info.setdefault("created_at", row["created_at"])
    info.update(title=row["title"], slug=row["slug"], updated_at=row["updated_at"])
    _write_snapshot(info_path, info)
    return row["id"], slug


def delete_post(post_id: int, *, db, root: Path) -> bool:
    """
    Snapshot first, then the row, then the directory: a crash midway never
    leaves an info.json that a rebuild could resurrect.
    """
    if not db.execute("SELECT 1 FROM posts WHERE id=?", (post_id,)).fetchone():
        return False

    folder = post_dir(post_id, root=root)
    (folder / INFO_FILE).unlink(missing_ok=True)

    db.execute("DELETE FROM posts WHERE id=?", (post_id,))
    db.commit()

    if folder.exists():
        shutil.rmtree(folder)
    return True


def list_posts(*, db) -> list[dict]:
    rows = db.execute("SELECT * FROM posts ORDER BY created_at DESC, id DESC")
    return [dict(r) for r in rows]


def get_post(post_id: int, *, db, root: Path) -> dict | None:
    row = db.execute("SELECT * FROM posts WHERE id=?", (post_id,)).fetchone()
    if not row:
        return None

    post = _with_content(row, root=root)
    info = _read_snapshot(post_dir(post_id, root=root) / INFO_FILE)
    if info is not None:
        post["info"] = info
    return post


def get_post_by_slug(slug: str, *, db, root: Path) -> dict | None:
    row = db.execute("SELECT * FROM posts WHERE slug=?", (slug,)).fetchone()
    return _with_content(row, root=root) if row else None


###############################################################################
# Assets
###############################################################################
def _asset_ext(filename: str | None) -> str:
    ext = Path(secure_filename(filename or "")).suffix.lower()
    return ext if _ASSET_EXT_RE.match(ext) else ""


def _asset_name(ext: str) -> str:
    token = "".join(secrets.choice(_ASSET_TOKEN_CHARS) for _ in range(ASSET_TOKEN_LEN))
    return f"{int(time() * 1000)}-{token}{ext}"


def save_asset(
    post_id: int,
    stream,
    filename: str | None,
    *,
    db,
    root: Path,
    staging: Path,
    max_bytes: int = MAX_ASSET_BYTES,
) -> str | None:
    """
    Copy *stream* into ``articles/<id>/assets/`` under a generated name.

    The payload is staged in *staging* first and only moved into place once
    it is known to fit within *max_bytes*.  The staged copy is gone
    afterwards whatever the outcome.  Returns the new filename, or None
    when the post does not exist.
    """
    if not db.execute("SELECT 1 FROM posts WHERE id=?", (post_id,)).fetchone():
        return None

    staging = Path(staging)
    staging.mkdir(parents=True, exist_ok=True)
    staged = None
    try:
        with tempfile.NamedTemporaryFile(
            dir=staging, prefix="upload-", delete=False
        ) as tmp:
            staged = Path(tmp.name)
            size = 0
            for chunk in iter(lambda: stream.read(COPY_CHUNK), b""):
                size += len(chunk)
                if size > max_bytes:
                    raise UploadTooLarge(
                        f"File exceeds {max_bytes // (1024 * 1024)} MiB limit."
                    )
                tmp.write(chunk)

        assets = post_dir(post_id, root=root) / ASSETS_DIR
        assets.mkdir(parents=True, exist_ok=True)
        ext = _asset_ext(filename)
        name = _asset_name(ext)
        while (assets / name).exists():
            name = _asset_name(ext)
        shutil.move(str(staged), str(assets / name))
        return name
    finally:
        if staged is not None:
            staged.unlink(missing_ok=True)


def asset_mimetype(filename: str) -> str:
    return ASSET_MIMES.get(Path(filename).suffix.lower(), "application/octet-stream")


def get_asset(post_id: int, filename: str, *, root: Path) -> tuple[bytes, str] | None:
    # only names we generated ourselves ever reach the filesystem
    if not ASSET_NAME_RE.fullmatch(filename or ""):
        return None
    path = post_dir(post_id, root=root) / ASSETS_DIR / filename
    if not path.is_file():
        return None
    return path.read_bytes(), asset_mimetype(filename)


###############################################################################
# Reconciliation – rebuild `posts` from info.json snapshots
###############################################################################
def _snapshot_row(info: dict) -> tuple:
    missing = [k for k in SNAPSHOT_FIELDS if k not in info]
    if missing:
        raise ValueError(f"missing field(s): {', '.join(missing)}")
    if isinstance(info["id"], bool) or not isinstance(info["id"], int):
        raise ValueError(f"id is not an integer: {info['id']!r}")
    wrong = [k for k in SNAPSHOT_FIELDS[1:] if not isinstance(info[k], str)]
    if wrong:
        raise ValueError(f"not a string: {', '.join(wrong)}")
    return tuple(info[k] for k in SNAPSHOT_FIELDS)


def rebuild_from_disk(*, db, root: Path) -> int:
    """
    Destructive: empty ``posts`` and refill it from every
    ``articles/<digits>/info.json``.  Broken directories are logged and
    skipped; returns the number of restored rows.
    """
    root = Path(root)
    app.logger.info("Rebuilding posts from %s", root)
    db.execute("DELETE FROM posts")

    folders = []
    if root.exists():
        folders = [
            p for p in root.iterdir() if p.is_dir() and _POST_DIR_RE.fullmatch(p.name)
        ]
    folders.sort(key=lambda p: int(p.name))

    for folder in folders:
        info_path = folder / INFO_FILE
        if not info_path.exists():
            app.logger.warning("Skipping %s: no %s", folder.name, INFO_FILE)
            continue
        try:
            info = json.loads(info_path.read_text(encoding="utf-8"))
            if not isinstance(info, dict):
                raise ValueError("snapshot is not a JSON object")
            # upsert keyed by id; a slug clash with another snapshot is an error
            db.execute(
                """INSERT INTO posts (id, title, slug, created_at, updated_at)
                        VALUES (?,?,?,?,?)
                   ON CONFLICT(id) DO UPDATE SET
                        title=excluded.title,
                        slug=excluded.slug,
                        created_at=excluded.created_at,
                        updated_at=excluded.updated_at""",
                _snapshot_row(info),
            )
        except (OSError, ValueError, OverflowError, sqlite3.Error) as exc:
            app.logger.warning("Skipping %s: %s", folder.name, exc)
            continue
        app.logger.info("Restored post %s (id %s)", info["title"], info["id"])

    db.commit()
    restored = db.execute("SELECT COUNT(*) AS c FROM posts").fetchone()["c"]
    app.logger.info("Rebuild finished: %d post(s) restored", restored)
    return restored


###############################################################################
# CLI – create admin + rebuild
###############################################################################
@app.cli.command("init")
@click.option("--username", prompt=True, help="Admin username")
@click.option(
    "--password", prompt=True, hide_input=True, confirmation_prompt=True,
    help="Admin password",
)
def cli_init(username: str, password: str):
    """Initialise DB *and* create the admin account."""
    init_db()  # no-op if already there
    db = get_db()
    if count_users(db=db):
        raise click.ClickException("An admin account already exists.")
    create_user(username, password, db=db)
    click.secho("\n✅  Admin created.", fg="green")


@app.cli.command("rebuild")
def cli_rebuild():
    """Rebuild the posts table from articles/<id>/info.json."""
    init_db()
    restored = rebuild_from_disk(db=get_db(), root=articles_root())
    click.secho(f"\n♻️  Restored {restored} post(s) from disk.", fg="yellow")


###############################################################################
# Authentication
###############################################################################
def login_required() -> None:
    if not session.get("user_id"):
        abort(401)


def _payload() -> dict:
    """JSON body or form fields, whichever the client sent."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else request.form.to_dict()


@app.route("/api/admin-exists")
def admin_exists():
    return {"adminExists": count_users(db=get_db()) > 0}


@app.route("/api/setup-admin", methods=["POST"])
def setup_admin():
    db = get_db()
    if count_users(db=db) > 0:
        return {"error": "Admin already exists.", "reason": "setup_done"}, 403

    data = _payload()
    create_user(data.get("username"), data.get("password"), db=db)
    return {"success": True}


@app.route("/api/login", methods=["POST"])
def login():
    data = _payload()
    username, password = data.get("username"), data.get("password")
    user = None
    if isinstance(username, str) and isinstance(password, str):
        user = get_user_by_username(username, db=get_db())
    if not user or not check_password(user, password):
        return {"error": "Invalid credentials.", "reason": "bad_credentials"}, 401

    session.clear()
    session.permanent = True
    session["user_id"] = user["id"]
    return {"success": True}


@app.route("/api/logout", methods=["POST"])
def logout():
    session.clear()
    return {"success": True}


@app.route("/api/me")
def me():
    user_id = session.get("user_id")
    return {"user": get_user_by_id(user_id, db=get_db()) if user_id else None}


###############################################################################
# Posts API
###############################################################################
@app.route("/api/posts", methods=["GET"])
def posts_index():
    return list_posts(db=get_db())


@app.route("/api/posts", methods=["POST"])
def posts_create():
    login_required()
    data = _payload()
    post_id, slug = create_post(
        data.get("title"), data.get("content"), db=get_db(), root=articles_root()
    )
    return {"id": post_id, "slug": slug}, 201


@app.route("/api/post/<int:post_id>", methods=["GET"])
def post_detail(post_id):
    post = get_post(post_id, db=get_db(), root=articles_root())
    if post is None:
        abort(404)
    return post


@app.route("/api/post/slug/<slug>")
def post_by_slug(slug):
    post = get_post_by_slug(slug, db=get_db(), root=articles_root())
    if post is None:
        abort(404)
    return post


@app.route("/api/post/<int:post_id>", methods=["PUT"])
def post_update(post_id):
    login_required()
    data = _payload()
    res = update_post(
        post_id,
        data.get("title"),
        data.get("content"),
        db=get_db(),
        root=articles_root(),
    )
    if res is None:
        abort(404)
    return {"success": True, "id": res[0], "slug": res[1]}


@app.route("/api/post/<int:post_id>", methods=["DELETE"])
def post_delete(post_id):
    login_required()
    if not delete_post(post_id, db=get_db(), root=articles_root()):
        abort(404)
    return {"success": True}


@app.route("/api/rebuild-database", methods=["POST"])
def rebuild_database():
    login_required()
    restored = rebuild_from_disk(db=get_db(), root=articles_root())
    return {"success": True, "restored": restored}


###############################################################################
# Assets API
###############################################################################
@app.route("/api/upload-image/<int:post_id>", methods=["POST"])
def upload_image(post_id):
    login_required()

    f = request.files.get("image")
    if f is None or not f.filename:
        return {"error": "No file received.", "reason": "invalid"}, 400

    name = save_asset(
        post_id,
        f.stream,
        f.filename,
        db=get_db(),
        root=articles_root(),
        staging=Path(app.config["UPLOAD_TMP_DIR"]),
        max_bytes=app.config["MAX_ASSET_BYTES"],
    )
    if name is None:
        abort(404)
    return {
        "url": url_for("article_asset", post_id=post_id, filename=name),
        "filename": name,
    }, 201


@app.route("/api/article-asset/<int:post_id>/<filename>")
def article_asset(post_id, filename):
    found = get_asset(post_id, filename, root=articles_root())
    if found is None:
        abort(404)
    data, mimetype = found
    return Response(data, mimetype=mimetype)


###############################################################################
# Error pages
###############################################################################
@app.errorhandler(StoreError)
def store_error(exc):
    return {"error": exc.message, "reason": exc.reason}, exc.status


@app.errorhandler(HTTPException)
def http_error(exc):
    """Every abort() becomes a small JSON body instead of an HTML page."""
    reason = (exc.name or "error").lower().replace(" ", "_")
    return {"error": exc.description, "reason": reason}, exc.code


@app.errorhandler(500)
def internal_error(exc):
    """
    Generic 500 for production.  Flask has already logged the traceback;
    in debug mode it bypasses this handler and the Werkzeug debugger
    shows it instead.
    """
    return {"error": "Internal Server Error", "reason": "internal"}, 500


###############################################################################
# main
###############################################################################
if __name__ == "__main__":
    with app.app_context():
        init_db()
        if not count_users(db=get_db()):
            app.logger.warning("No admin yet – POST /api/setup-admin to create one")
        if REBUILD_ON_START:
            rebuild_from_disk(db=get_db(), root=articles_root())
    app.run(debug=True)
