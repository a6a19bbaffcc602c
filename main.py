from flask import Flask, Response, g, jsonify, redirect, render_template, request
from datetime import datetime, timezone
from urllib.parse import quote
import atexit
import hmac
import logging
import posixpath

from odindex.config import Settings
from odindex.formatters import clean_path, w3c_date
from odindex.gate import AuthGate, GateStatus, apply_cache_policy, unlocked
from odindex.notes import FolderNotes
from odindex.onedrive import Client, File, Folder, NotFound, TransientError
from odindex.passwords import PasswordResolver
from odindex.routes import classify, is_sentinel, load_gates
from odindex.session import COOKIE_MAX_AGE, COOKIE_NAME, SessionStore
from odindex.sitemap import SitemapGenerator
from odindex.store import Cache, open_store
from odindex.tokens import IdCipher, TokenCodec

logger = logging.getLogger(__name__)

PROXY_SIZE_LIMIT = 4 * 1024 * 1024
TOKEN_HEADER = "od-protected-token"


def sanitise_query(query: str) -> str:
    """Escape a search query for the Graph ``search(q='...')`` function."""
    sanitised = (
        query.replace("'", "''")
        .replace("<", " &lt; ")
        .replace(">", " &gt; ")
        .replace("?", " ")
        .replace("/", " ")
        .replace("\\", " ")
    )
    return quote(sanitised, safe="-_.!~*'()")


def is_traversal(path: str) -> bool:
    return "../" in path or "..\\" in path or ":" in path


def create_app(settings=None, store=None, drive=None):
    if settings is None:
        settings = Settings.from_env()
        logging.basicConfig(
            level=getattr(logging, settings.log_level, logging.INFO),
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
        )

    if store is None:
        store = open_store(settings.redis_url, settings.kv_prefix)
        atexit.register(store.close)

    if drive is None:
        drive = Client(settings.scopes, settings.client_id, settings.tenant_id, settings.base_directory)
        try:
            logger.info("Authenticating...")
            drive.devicecode_login()
            logger.info("Authentication successful.")
        except Exception as e:
            logger.error("Authentication failed: %s", e)
            raise SystemExit(1)

    app = Flask(__name__)
    app.jinja_env.filters["w3c_date"] = w3c_date

    gates = load_gates(settings.protected_routes)
    cache = Cache(store)
    resolver = PasswordResolver(drive, cache)
    gate = AuthGate(gates, resolver)
    sessions = SessionStore(store)
    codec = TokenCodec(settings.secret_key)
    ids = IdCipher(settings.secret_key)
    sitemap = SitemapGenerator(drive, cache, gates, settings.max_items)
    notes = FolderNotes(drive, cache)

    app.extensions["odindex"] = dict(
        settings=settings, store=store, drive=drive, gate=gate, resolver=resolver,
        sessions=sessions, codec=codec, ids=ids, sitemap=sitemap, notes=notes,
    )

    def visitor_session():
        """Session named by the cookie, if any. Read paths never create one."""
        if "od_session" not in g:
            g.od_session = sessions.load(request.cookies.get(COOKIE_NAME))
        return g.od_session

    def current_session():
        if g.get("od_session") is None:
            g.od_session, g.od_session_created = sessions.get_or_create(request.cookies.get(COOKIE_NAME))
        return g.od_session

    def query_string(name, default=""):
        values = request.args.getlist(name)
        if len(values) > 1:
            return None
        return values[0] if values else default

    def json_error(message, status, decision=None, **extra):
        response = jsonify(error=message, **extra)
        response.status_code = status
        return apply_cache_policy(response, decision, settings.cache_control_header)

    def respond(payload, decision=None):
        return apply_cache_policy(jsonify(payload), decision, settings.cache_control_header)

    def deny(decision):
        if decision.transient:
            return json_error("Internal server error.", 500, decision)
        if decision.status == GateStatus.LOCKED_NO_PASSWORD_SET:
            return json_error("You didn't set a password.", 403, decision, authPath=decision.gate_path, needAuth=True)
        return json_error("Password required.", 401, decision, authPath=decision.gate_path, needAuth=True)

    def upstream_error(result, decision=None):
        if isinstance(result, NotFound):
            return json_error("Item not found.", 404, decision)
        return json_error("Internal server error.", 500, decision)

    def no_access_token():
        return json_error("No access token.", 403)

    def item_payload(item, decision):
        data = item.to_dict(ids.encrypt(item.id))
        if is_sentinel(item.name):
            data["size"] = 0
        elif decision.status == GateStatus.LOCKED and not item.is_folder:
            data["odpt"] = codec.mint(decision.password, item.id)
        return data

    @app.after_request
    def session_cookie(response):
        if g.get("od_session_created"):
            response.set_cookie(
                COOKIE_NAME, g.od_session["id"], max_age=COOKIE_MAX_AGE, path="/",
                httponly=True, secure=True, samesite="Strict",
            )
        if g.get("od_session_destroyed"):
            response.delete_cookie(COOKIE_NAME, path="/", httponly=True, secure=True, samesite="Strict")
        return response

    @app.errorhandler(405)
    def method_not_allowed(e):
        return jsonify(error="Invalid request method."), 405

    @app.route("/api/")
    def list_path():
        path = query_string("path", "/")
        sort = query_string("sort")
        next_token = query_string("next")

        if path == "[...path]":
            return json_error("No path specified.", 400)
        if path is None:
            return json_error("Path query invalid.", 400)
        if sort is None:
            return json_error("Sort query invalid.", 400)
        if next_token is None:
            return json_error("Next query invalid.", 400)

        path = clean_path(path)
        if is_sentinel(path):
            return json_error("Forbidden.", 403)
        if not drive.authenticated:
            return no_access_token()

        # Files and folders classify differently, so the type is looked up first
        result = drive.get_children(path, next_token=next_token or None, sort=sort or None,
                                    top=settings.max_items)
        decision = gate.check(path, is_folder=not isinstance(result, File))
        if not unlocked(decision, visitor_session()):
            return deny(decision)

        if isinstance(result, File):
            return respond({"file": item_payload(result, decision)}, decision)
        if isinstance(result, (NotFound, TransientError)):
            return upstream_error(result, decision)

        payload = {"folder": {"value": [item_payload(item, decision) for item in result.items]}}
        if result.next_token:
            payload["next"] = result.next_token
        payload["readme"] = notes.read(path, "readme.md")
        payload["head"] = notes.read(path, "head.md")
        return respond(payload, decision)

    def serve_raw(attachment_name=None):
        path = query_string("path", "/")
        if path is None:
            return json_error("Path query invalid.", 400)

        path = clean_path(path)
        if is_sentinel(path):
            return json_error("Forbidden.", 403)
        if not drive.authenticated:
            return no_access_token()

        decision = gate.check(path, is_folder=False)
        item = None
        if not unlocked(decision, visitor_session()):
            if decision.status != GateStatus.LOCKED:
                return deny(decision)
            token = request.args.get("odpt") or request.headers.get(TOKEN_HEADER)
            if not token:
                return deny(decision)
            item = drive.get_item(path)
            if not isinstance(item, File) or not codec.verify(token, decision.password, item.id):
                return deny(decision)

        if item is None:
            item = drive.get_item(path)
        if isinstance(item, (NotFound, TransientError)):
            return upstream_error(item, decision)
        if isinstance(item, Folder):
            return json_error("Cannot download a folder.", 400, decision)

        if request.args.get("proxy") == "true" and item.size < PROXY_SIZE_LIMIT:
            content = drive.get_content(item.id)
            if isinstance(content, (NotFound, TransientError)):
                return upstream_error(content, decision)
            response = Response(content, mimetype=item.mimetype)
        elif item.download_url:
            response = redirect(item.download_url)
        else:
            return json_error("Item not found.", 404, decision)

        if attachment_name:
            response.headers["Content-Disposition"] = f"attachment; filename=\"{quote(attachment_name)}\""
        return apply_cache_policy(response, decision, settings.cache_control_header)

    @app.route("/api/raw")
    def raw():
        return serve_raw()

    @app.route("/api/name/<name>")
    def raw_by_name(name):
        return serve_raw(attachment_name=name)

    @app.route("/api/item")
    def item_by_id():
        obfuscated = query_string("id")
        if not obfuscated:
            return json_error("Invalid driveItem ID.", 400)
        item_id = ids.decrypt(obfuscated)
        if item_id is None:
            return json_error("Invalid driveItem ID.", 400)
        if not drive.authenticated:
            return no_access_token()

        item = drive.get_item_by_id(item_id)
        if isinstance(item, (NotFound, TransientError)):
            return upstream_error(item)
        # Outside the base directory, or a password file
        if item.path is None or is_sentinel(item.path):
            return json_error("Forbidden.", 403)

        decision = gate.check(item.path, is_folder=item.is_folder)
        if not unlocked(decision, visitor_session()):
            return deny(decision)

        data = item.to_dict(ids.encrypt(item.id))
        data["parentReference"] = {
            "id": ids.encrypt(item.parent_id) if item.parent_id else None,
            "path": posixpath.dirname(item.path),
        }
        return respond(data, decision)

    @app.route("/api/search")
    def search():
        query = query_string("q")
        if not query or not query.strip():
            return respond([])
        if not drive.authenticated:
            return no_access_token()

        results = drive.search(sanitise_query(query), top=settings.max_items)
        if isinstance(results, TransientError):
            return upstream_error(results)

        session = visitor_session()
        decisions = {}
        cache_decision = None
        payload = []
        for item in results:
            if is_sentinel(item.name):
                continue
            if item.path is None:
                # Unknown location cannot be checked against the gates
                if gates:
                    continue
            else:
                candidates = classify(item.path, gates, item.is_folder)
                if candidates:
                    if candidates not in decisions:
                        decisions[candidates] = gate.check(item.path, is_folder=item.is_folder)
                    decision = decisions[candidates]
                    cache_decision = cache_decision or decision
                    if not unlocked(decision, session):
                        continue

            payload.append({
                "id": ids.encrypt(item.id),
                "name": item.name,
                "file": not item.is_folder,
                "parentReference": {
                    "id": ids.encrypt(item.parent_id) if item.parent_id else None,
                    "path": posixpath.dirname(item.path) if item.path else None,
                },
            })
        return respond(payload, cache_decision)

    @app.route("/api/verify", methods=["POST", "DELETE"])
    def verify():
        if request.method == "DELETE":
            sessions.destroy(request.cookies.get(COOKIE_NAME))
            g.od_session_destroyed = True
            return jsonify(success=True)

        body = request.get_json(silent=True) if request.is_json else request.form
        if not isinstance(body, dict):
            return json_error("Invalid request body.", 400)
        token = body.get("token")
        path = body.get("path")
        if not isinstance(token, str) or not isinstance(path, str) or not token or not path:
            return json_error("Invalid request body.", 400)
        if not path.endswith("/.password") or is_traversal(path):
            return json_error("Invalid password file.", 400)
        if not drive.authenticated:
            return no_access_token()

        sentinel_path = clean_path(path).lower()
        result = resolver.resolve(sentinel_path)
        if isinstance(result, NotFound):
            logger.warning("Password file not found: %s", sentinel_path)
            return json_error("Password file not found.", 401)
        if isinstance(result, TransientError):
            return json_error("Internal server error.", 500)

        if not hmac.compare_digest(result.plaintext.encode(), token.encode()):
            return json_error("Incorrect password.", 401)

        session = current_session()
        pass_keys = dict(session.get("passKeys") or {})
        pass_keys[sentinel_path] = token
        g.od_session = sessions.update(session["id"], {"passKeys": pass_keys})
        return jsonify(success=True)

    @app.route("/sitemap.xml")
    def sitemap_xml():
        entries = sitemap.load()
        if entries is None:
            sitemap.generate_in_background()
            entries = []

        scheme = request.headers.get("X-Forwarded-Proto", request.scheme)
        base_url = f"{scheme}://{request.host}"
        body = render_template("sitemap.xml", base_url=base_url, entries=entries,
                               now=datetime.now(timezone.utc))
        return Response(body, mimetype="application/xml")

    @app.cli.command("generate-sitemap")
    def generate_sitemap_command():
        """Walk the public part of the drive and cache the sitemap."""
        if not sitemap.generate():
            logger.warning("Sitemap generation skipped, another run holds the lock.")

    return app


if __name__ == "__main__":
    create_app().run()
