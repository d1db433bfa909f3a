"""
File Viewer Server

One small Flask app per open file tab. Shows the file, serves its raw
content for reloads and accepts edits for that single file only.
"""

import logging
from pathlib import Path

from flask import Flask, Response, jsonify, render_template_string, request

from ..core.errors import PreconditionError
from .security import install_loopback_guard

logger = logging.getLogger(__name__)

MAX_SAVE_BYTES = 10 * 1024 * 1024

VIEWER_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <title>{{ file_name }}</title>
    <meta charset="utf-8">
    <style>
        body { margin: 0; background: #1a1a1a; color: #ddd; font-family: monospace; }
        header { padding: 8px 16px; background: #111; border-bottom: 1px solid #333; }
        .path { color: #3b82f6; }
        pre { margin: 0; padding: 16px; white-space: pre-wrap; word-wrap: break-word; }
    </style>
</head>
<body>
    <header><span class="path">{{ file_path }}</span></header>
    <pre id="content">{{ content }}</pre>
    <script>
        let lastMtime = null;
        async function poll() {
            const res = await fetch('/api/mtime');
            if (!res.ok) return;
            const data = await res.json();
            if (lastMtime !== null && data.mtime !== lastMtime) {
                const text = await (await fetch('/api/content')).text();
                document.getElementById('content').textContent = text;
            }
            lastMtime = data.mtime;
        }
        setInterval(poll, 2000);
    </script>
</body>
</html>
"""


def create_viewer_app(file_path) -> Flask:
    """
    Build the viewer app for one file.

    Args:
        file_path: Absolute path of the file to serve

    Returns:
        Flask app
    """
    app = Flask(__name__)
    app.config['MAX_CONTENT_LENGTH'] = MAX_SAVE_BYTES
    install_loopback_guard(app)

    target = Path(file_path)

    @app.route('/', methods=['GET'])
    @app.route('/index.html', methods=['GET'])
    def index():
        try:
            content = target.read_text(encoding='utf-8', errors='replace')
        except OSError as e:
            return Response(f"Error loading viewer: {e}", status=500, mimetype='text/plain')
        return render_template_string(
            VIEWER_TEMPLATE, file_name=target.name, file_path=str(target), content=content
        )

    @app.route('/api/content', methods=['GET'])
    def content():
        try:
            return Response(target.read_text(encoding='utf-8', errors='replace'), mimetype='text/plain')
        except OSError as e:
            return Response(f"Error reading file: {e}", status=500, mimetype='text/plain')

    @app.route('/api/mtime', methods=['GET'])
    def mtime():
        try:
            return jsonify({'mtime': target.stat().st_mtime * 1000})
        except OSError:
            return jsonify({'error': 'Failed to stat file'}), 500

    @app.route('/api/save', methods=['POST'])
    def save():
        data = request.get_json(silent=True, force=True)
        if not isinstance(data, dict) or not isinstance(data.get('content'), str):
            return Response('Missing content', status=400, mimetype='text/plain')

        requested = data.get('file')
        if requested is not None and requested != str(target):
            return Response('Cannot save to different file', status=403, mimetype='text/plain')

        try:
            target.write_text(data['content'], encoding='utf-8')
        except OSError as e:
            logger.error(f"Failed to save {target}: {e}")
            return Response(f"Error saving file: {e}", status=500, mimetype='text/plain')

        logger.info(f"Saved: {target}")
        return jsonify({'success': True})

    return app


def run_viewer(port: int, file_path, bind_host: str = '127.0.0.1') -> None:
    """Serve a file until interrupted."""
    target = Path(file_path).resolve()
    if not target.exists():
        raise PreconditionError(f"File not found: {target}")

    app = create_viewer_app(target)
    logger.info(f"File Viewer: http://localhost:{port} ({target})")
    app.run(host=bind_host, port=port, threaded=True)
