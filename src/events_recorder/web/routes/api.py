"""API blueprint: cameras, clip listing, video/thumbnail serving, delete, stats."""

import logging
import os
import threading
import time

import cv2
from flask import Blueprint, Response, jsonify, request, send_from_directory

from events_recorder.logging_utils import error_buffer
from events_recorder.models import ClipRecord
from events_recorder.web.path_helpers import is_valid_clip_id, resolve_under_storage

logger = logging.getLogger("events-recorder")

MAX_THUMBNAIL_HEIGHT = 2160


def _int_arg(name: str) -> int | None:
    """Parse an optional integer query arg. Raises ValueError if present but not an int."""
    value = request.args.get(name)
    if value is None or value == "":
        return None
    return int(value)


def resize_jpeg(path: str, height: int) -> bytes | None:
    """Read a JPEG and return it re-encoded at the given height (aspect preserved)."""
    image = cv2.imread(path)
    if image is None:
        return None
    h, w = image.shape[:2]
    if height < h:
        width = max(1, round(w * height / h))
        image = cv2.resize(image, (width, height), interpolation=cv2.INTER_AREA)
    ok, buf = cv2.imencode(".jpg", image)
    return buf.tobytes() if ok else None


def create_bp(orchestrator):
    """Create API blueprint with routes closed over orchestrator."""
    bp = Blueprint("api", __name__)
    storage_path = orchestrator.config["STORAGE_PATH"]

    def _recorder(camera: str):
        return orchestrator.get_camera(camera)

    def _clip_json(camera: str, record: ClipRecord) -> dict:
        primary = record.primary_class
        return {
            "id": record.clip_id,
            "startTime": record.start_time,
            "endTime": record.end_time,
            "duration": record.duration_ms,
            "size": record.size_bytes,
            "detectionClass": primary.value if primary else None,
            "detectionClasses": [c.value for c in record.detection_classes],
            "videoUrl": f"/api/cameras/{camera}/clips/{record.clip_id}/video",
            "thumbnailUrl": f"/api/cameras/{camera}/clips/{record.clip_id}/thumbnail",
        }

    def _under_storage(path: str) -> bool:
        return resolve_under_storage(storage_path, os.path.relpath(path, os.path.realpath(storage_path))) is not None

    def _lookup(camera: str, clip_id: str):
        """Return (recorder, record) or an error response tuple."""
        recorder = _recorder(camera)
        if recorder is None:
            return None, (jsonify({"status": "error", "message": "Unknown camera"}), 404)
        if not is_valid_clip_id(clip_id):
            return None, (jsonify({"status": "error", "message": "Invalid clip id"}), 400)
        record = recorder.get_clip(clip_id)
        if record is None:
            return None, (jsonify({"status": "error", "message": "Clip not found"}), 404)
        return (recorder, record), None

    @bp.route("/cameras")
    def list_cameras():
        cameras = sorted(orchestrator.cameras)
        return jsonify({"cameras": cameras, "default": cameras[0] if cameras else None})

    @bp.route("/cameras/<camera>/clips")
    def list_clips(camera):
        recorder = _recorder(camera)
        if recorder is None:
            return jsonify({"status": "error", "message": "Unknown camera"}), 404
        try:
            start_ms = _int_arg("start")
            end_ms = _int_arg("end")
        except ValueError:
            return jsonify({"status": "error", "message": "start and end must be epoch milliseconds"}), 400
        clips = recorder.list_clips(start_ms, end_ms)
        return jsonify({
            "camera": camera,
            "total_count": len(clips),
            "clips": [_clip_json(camera, c) for c in clips],
        })

    @bp.route("/cameras/<camera>/clips/<clip_id>/video")
    def serve_video(camera, clip_id):
        found, error = _lookup(camera, clip_id)
        if error:
            return error
        _, record = found
        if not _under_storage(record.video_path) or not os.path.isfile(record.video_path):
            return "File not found", 404
        # conditional=True answers Range requests with 206 Partial Content.
        return send_from_directory(
            os.path.dirname(record.video_path),
            os.path.basename(record.video_path),
            mimetype="video/mp4",
            conditional=True,
        )

    @bp.route("/cameras/<camera>/clips/<clip_id>/thumbnail")
    def serve_thumbnail(camera, clip_id):
        found, error = _lookup(camera, clip_id)
        if error:
            return error
        recorder, record = found
        try:
            height = _int_arg("height")
        except ValueError:
            return jsonify({"status": "error", "message": "height must be an integer"}), 400
        if height is not None and not 0 < height <= MAX_THUMBNAIL_HEIGHT:
            return jsonify({"status": "error", "message": f"height must be 1-{MAX_THUMBNAIL_HEIGHT}"}), 400

        if not _under_storage(record.thumbnail_path):
            return "Thumbnail unavailable", 404
        if not os.path.isfile(record.thumbnail_path) and not recorder.ensure_thumbnail(record):
            return "Thumbnail unavailable", 404

        if height is None:
            return send_from_directory(
                os.path.dirname(record.thumbnail_path),
                os.path.basename(record.thumbnail_path),
                mimetype="image/jpeg",
            )
        data = resize_jpeg(record.thumbnail_path, height)
        if data is None:
            logger.warning("Could not resize thumbnail %s", record.thumbnail_path)
            return "Thumbnail unavailable", 500
        return Response(data, mimetype="image/jpeg")

    @bp.route("/cameras/<camera>/clips/delete", methods=["POST"])
    def delete_clips(camera):
        recorder = _recorder(camera)
        if recorder is None:
            return jsonify({"status": "error", "message": "Unknown camera"}), 404
        body = request.get_json(silent=True) or {}
        ids = body.get("ids")
        if not isinstance(ids, list) or not ids:
            return jsonify({"status": "error", "message": "Body must be {\"ids\": [...]}"}), 400
        invalid = [i for i in ids if not is_valid_clip_id(i)]
        if invalid:
            return jsonify({"status": "error", "message": "Invalid clip id", "invalid": invalid}), 400
        try:
            deleted = recorder.delete_clips(ids)
        except Exception as e:
            logger.error("Error deleting clips on %s: %s", camera, e)
            return jsonify({"status": "error", "message": str(e)}), 500
        logger.info("Deleted %d clip(s) on %s via API", len(deleted), camera)
        return jsonify({"status": "success", "deleted": deleted})

    @bp.route("/stats")
    def stats():
        return jsonify({
            "storage": orchestrator.storage_usage.get(),
            "cameras": {name: rec.get_stats() for name, rec in orchestrator.cameras.items()},
            "mqtt": {
                "connected": orchestrator.mqtt_wrapper.mqtt_connected,
                "messages_received": orchestrator.mqtt_handler.messages_received,
                "messages_dropped": orchestrator.mqtt_handler.messages_dropped,
            },
            "active_threads": threading.active_count(),
            "recent_errors": error_buffer.get_all(),
            "generated_at": time.time(),
        })

    return bp
