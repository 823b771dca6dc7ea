"""
Comic Generator - HTTP API (Flask)

Endpoints:
- POST /generate-comic      Run the full pipeline for a prompt
- POST /regenerate-panels   Regenerate selected panels of a stored project
- POST /edit-panel          Set one field of a panel or character
- GET  /projects/<id>/pdf   Download a stored project as a PDF
- GET  /health              Liveness check

Every request builds its own pipeline from the factory and runs it on its
own event loop, so HTTP clients and per-panel state are never shared
between requests.

Usage:
    python server.py            # listens on $PORT (default 5000)
"""

import asyncio
import io
import logging
import os
from typing import Callable

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_file
from flask_cors import CORS

from comicgen.comic_generator import ComicPipeline
from comicgen.errors import ConfigError, EditTargetNotFound, ProjectNotFound, ProjectStoreError
from comicgen.models import ComicRequest

logger = logging.getLogger("comicgen.server")


def _run(pipeline: ComicPipeline, coro):
    """Run a pipeline coroutine to completion, then release its HTTP clients."""
    async def runner():
        try:
            return await coro
        finally:
            await pipeline.close()

    return asyncio.run(runner())


def create_app(pipeline_factory: Callable[[], ComicPipeline] = ComicPipeline) -> Flask:
    """Build the Flask app. pipeline_factory is called once per request."""
    app = Flask(__name__)
    CORS(app)

    @app.route("/health")
    def health():
        return jsonify({"ok": True})

    @app.route("/generate-comic", methods=["POST"])
    def generate_comic():
        payload = request.get_json(silent=True) or {}
        if not str(payload.get("prompt") or "").strip():
            return jsonify({"error": "prompt is required"}), 400

        comic_request = ComicRequest.from_json(payload)
        pipeline = pipeline_factory()
        try:
            result = _run(pipeline, pipeline.generate_comic(comic_request))
        except ConfigError as e:
            return jsonify({"error": str(e)}), 400
        except Exception as e:
            logger.exception(f"generate-comic failed: {e}")
            return jsonify({"error": str(e)}), 500

        project = result.project
        body = {
            "projectId": project.id if project else None,
            "status": result.status,
            "title": project.title if project else "",
            "pages": result.page_urls or [{"page": p.page_number, "url": None} for p in result.pages],
            "characters": [
                {"id": c.id, "name": c.name, "references": list(c.reference_urls)}
                for c in (project.characters if project else [])
            ],
            "errors": result.errors,
        }
        if not result.pages:
            return jsonify(body), 500
        return jsonify(body)

    @app.route("/regenerate-panels", methods=["POST"])
    def regenerate_panels():
        payload = request.get_json(silent=True) or {}
        panel_ids = payload.get("panelIds")
        if not panel_ids:
            return jsonify({"error": "panelIds is required"}), 400

        pipeline = pipeline_factory()
        try:
            summary = _run(pipeline, pipeline.regenerate_panels(payload.get("projectId"), panel_ids))
        except ProjectNotFound as e:
            return jsonify({"success": False, "error": str(e)}), 404
        except (ConfigError, ProjectStoreError) as e:
            return jsonify({"success": False, "error": str(e)}), 400
        except Exception as e:
            logger.exception(f"regenerate-panels failed: {e}")
            return jsonify({"success": False, "error": str(e)}), 500

        return jsonify(summary)

    @app.route("/edit-panel", methods=["POST"])
    def edit_panel():
        payload = request.get_json(silent=True) or {}
        if "value" not in payload:
            return jsonify({"success": False, "error": "value is required (null clears a field)"}), 400

        pipeline = pipeline_factory()
        edit = asyncio.to_thread(
            pipeline.edit_project,
            payload.get("projectId"),
            payload.get("targetType") or "panel",
            payload.get("targetId"),
            payload.get("field"),
            payload["value"],
        )
        try:
            summary = _run(pipeline, edit)
        except EditTargetNotFound as e:
            return jsonify({"success": False, "error": str(e), "available": e.available}), 404
        except ProjectNotFound as e:
            return jsonify({"success": False, "error": str(e)}), 404
        except (ConfigError, ProjectStoreError) as e:
            return jsonify({"success": False, "error": str(e)}), 400
        except Exception as e:
            logger.exception(f"edit-panel failed: {e}")
            return jsonify({"success": False, "error": str(e)}), 500

        return jsonify(summary)

    @app.route("/projects/<project_id>/pdf")
    def project_pdf(project_id):
        pipeline = pipeline_factory()
        try:
            _, pdf = _run(pipeline, pipeline.compose_project(project_id))
        except ProjectNotFound as e:
            return jsonify({"error": str(e)}), 404
        except ProjectStoreError as e:
            return jsonify({"error": str(e)}), 400
        except Exception as e:
            logger.exception(f"PDF export failed: {e}")
            return jsonify({"error": str(e)}), 500

        return send_file(
            io.BytesIO(pdf),
            mimetype="application/pdf",
            as_attachment=True,
            download_name=f"{project_id}.pdf",
        )

    return app


# ============== MAIN ==============

if __name__ == "__main__":
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    port = int(os.environ.get("PORT", 5000))
    create_app().run(host="0.0.0.0", port=port)
