"""
Document Auto-Capture Web Application
Thin coordinator for the layered capture system.

Provides REST API for:
- Camera start/stop and MJPEG preview with the tracked document overlay
- Detection and stability status
- Manual capture and the latest captured document
- Perspective rectification of uploaded images
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import cv2
import json
import logging
import os
import threading
import time

import numpy as np

# Import layers
from layer1_tracking import Quad
from layer2_capture import CameraHandler, CapturePipeline, ContourQuadDetector, PipelineConfig
from layer3_rectification import PerspectiveRectifier, RectifiedImage

# Import error handling
from error_handlers import (
    ScannerError,
    CameraError,
    CameraNotInitializedError,
    CaptureDeviceError,
    handle_error
)

# Setup logging
logging.basicConfig(
    level=getattr(logging, os.environ.get('LOG_LEVEL', 'INFO').upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for cross-origin requests from the front end
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))
CAMERA_WIDTH = int(os.environ.get('CAMERA_WIDTH', 1920))
CAMERA_HEIGHT = int(os.environ.get('CAMERA_HEIGHT', 1080))
CAPTURE_TIMEOUT = float(os.environ.get('CAPTURE_TIMEOUT', 10.0))
JPEG_QUALITY = 90

OVERLAY_TRACKING_COLOR = (0, 200, 255)
OVERLAY_STABLE_COLOR = (0, 255, 0)


def encode_jpeg(image):
    ok, buffer = cv2.imencode('.jpg', image, [cv2.IMWRITE_JPEG_QUALITY, JPEG_QUALITY])
    if not ok:
        raise ValueError("JPEG encoding failed")
    return buffer.tobytes()


def parse_corners(raw, width, height):
    """
    Parse a JSON corner description into a Quad.

    Accepts a list of four [x, y] pairs (TL, TR, BR, BL) or an object keyed
    top_left/top_right/bottom_right/bottom_left. With "normalized": true the
    points are unit coordinates with a bottom-left origin.
    """
    data = json.loads(raw)
    normalized = False
    if isinstance(data, dict):
        normalized = bool(data.get('normalized', False))
        points = data.get('points')
        if points is None:
            points = [data[k] for k in ('top_left', 'top_right', 'bottom_right', 'bottom_left')]
    else:
        points = data

    if len(points) != 4 or any(len(p) != 2 for p in points):
        raise ValueError("expected four [x, y] corners")

    points = [(float(x), float(y)) for x, y in points]
    if normalized:
        return Quad.from_normalized(points, width, height)
    return Quad(*points)


class CaptureCoordinator:
    """
    Coordinates the capture pipeline across layers
    Thin wrapper wiring the camera stream into the pipeline and keeping the
    latest frame, overlay and result for the HTTP side
    """

    def __init__(self, camera_index, camera_config=None, pipeline_config=None):
        logger.info("Initializing CaptureCoordinator")

        # Layer 2: Capture
        self.camera = CameraHandler(camera_index=camera_index, config=camera_config)
        self.detector = ContourQuadDetector()

        # Layer 3: Rectification
        self.rectifier = PerspectiveRectifier()

        self.pipeline = CapturePipeline(
            detector=self.detector,
            capture=self.camera.capture_still,
            config=pipeline_config or PipelineConfig.from_env(),
            rectifier=self.rectifier,
            on_overlay=self._on_overlay,
            on_complete=self._on_complete,
            on_error=self._on_error,
            on_progress=self._on_progress,
        )

        self._lock = threading.Lock()
        self._latest_frame = None
        self._overlay = None
        self._progress = None
        self.last_result = None
        self.last_error = None

        logger.info("CaptureCoordinator initialized successfully")

    # Pipeline callbacks (UI dispatch thread)

    def _on_frame(self, frame):
        with self._lock:
            self._latest_frame = frame
        self.pipeline.submit_frame(frame)

    def _on_overlay(self, quad):
        with self._lock:
            self._overlay = quad

    def _on_progress(self, verdict):
        with self._lock:
            self._progress = verdict

    def _on_complete(self, result):
        logger.info(f"Document captured: {result.size[0]}x{result.size[1]}, rectified={result.rectified}")
        with self._lock:
            self.last_result = result
            self.last_error = None

    def _on_error(self, error):
        with self._lock:
            self.last_error = error

    # Camera lifecycle

    def start(self):
        """
        Open the camera and start live auto-capture

        Raises:
            CameraError: If the camera cannot be opened
        """
        self.camera.initialize()
        self.pipeline.start()
        self.camera.start_stream(self._on_frame)
        logger.info("Live capture running")
        return True

    def stop(self):
        self.camera.stop_stream()
        self.pipeline.stop()
        self.camera.release()
        with self._lock:
            self._latest_frame = None
            self._overlay = None
            self._progress = None

    def is_running(self):
        return self.camera.is_streaming() and self.pipeline.is_running()

    # Views

    def preview_frame(self):
        """
        Latest frame with the overlay quad drawn

        Returns:
            numpy.ndarray or None: Annotated frame, None before the first frame
        """
        with self._lock:
            frame = self._latest_frame
            quad = self._overlay
            progress = self._progress

        if frame is None:
            return None

        image = frame.pixels.copy()
        if quad is not None:
            stable = progress is not None and progress.is_stable
            color = OVERLAY_STABLE_COLOR if stable else OVERLAY_TRACKING_COLOR
            pts = quad.as_array(np.float32).round().astype(np.int32)
            cv2.polylines(image, [pts], isClosed=True, color=color, thickness=3)
            if progress is not None:
                label = f"{progress.sample_count}/{progress.window_size}"
                x, y = pts[0]
                cv2.putText(image, label, (int(x), max(int(y) - 10, 20)),
                            cv2.FONT_HERSHEY_SIMPLEX, 0.8, color, 2)
        return image

    def detection_status(self):
        with self._lock:
            quad = self._overlay
            error = self.last_error
        status = self.pipeline.status()
        return {
            "detected": quad is not None,
            "corners": quad.to_dict() if quad else None,
            "state": status['state'],
            "cooldown_remaining": status['cooldown_remaining'],
            "stability": status['stability'],
            "last_error": error.to_dict() if error else None,
        }

    def capture_manual(self, timeout=CAPTURE_TIMEOUT):
        """
        Photograph now and rectify if a document is found

        Raises:
            CameraNotInitializedError: If live capture is not running
            ScannerError: If the capture device failed
        """
        if not self.camera.is_opened() or not self.pipeline.is_running():
            raise CameraNotInitializedError()

        result = self.pipeline.capture_now().result(timeout=timeout)
        if result is None:
            raise CaptureDeviceError("capture returned no image")
        return result


# ============================================================================
# Application Initialization
# ============================================================================

logger.info("Starting application initialization")

scanner = CaptureCoordinator(
    camera_index=CAMERA_INDEX,
    camera_config={'width': CAMERA_WIDTH, 'height': CAMERA_HEIGHT},
)


# ============================================================================
# Flask Routes - Camera
# ============================================================================

@app.route('/video_feed')
def video_feed():
    """Video streaming route with the tracked document overlay"""
    logger.info("Video feed with overlay requested")

    def generate():
        logger.info("Starting video stream generator with overlay")
        while scanner.is_running():
            frame = scanner.preview_frame()
            if frame is None:
                time.sleep(0.05)
                continue

            frame_bytes = encode_jpeg(frame)
            yield (b'--frame\r\n'
                   b'Content-Type: image/jpeg\r\n\r\n' + frame_bytes + b'\r\n')
            time.sleep(1 / 30)
        logger.info("Video stream generator finished")

    return Response(generate(), mimetype='multipart/x-mixed-replace; boundary=frame')


@app.route('/detection_status', methods=['GET'])
def detection_status():
    """Current overlay quad, capture state and stability progress"""
    return jsonify({
        "success": True,
        "detection": scanner.detection_status()
    })


@app.route('/start_camera', methods=['POST'])
def start_camera():
    """Open the camera and start live auto-capture"""
    logger.info("Start camera request received")

    try:
        success = scanner.start()
        logger.info(f"Camera start result: {success}")
        return jsonify({"success": success})
    except CameraError as e:
        return jsonify(handle_error(e)), 503
    except Exception as e:
        return jsonify(handle_error(e)), 500


@app.route('/stop_camera', methods=['POST'])
def stop_camera():
    """Stop live capture and release the camera"""
    logger.info("Stop camera request received")
    scanner.stop()
    return jsonify({"success": True})


@app.route('/capture', methods=['POST'])
def capture():
    """Manual single-shot capture"""
    logger.info("Capture request received from client")

    try:
        result = scanner.capture_manual()
    except CameraError as e:
        return jsonify(handle_error(e)), 503
    except ScannerError as e:
        return jsonify(handle_error(e)), 422
    except Exception as e:
        return jsonify(handle_error(e)), 500

    return jsonify({"success": True, "result": result.to_dict()})


# ============================================================================
# API Endpoints
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "doc-autocapture",
        "version": "1.0.0"
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and pipeline counters"""
    return jsonify({
        "success": True,
        "camera_open": scanner.camera.is_opened(),
        "pipeline": scanner.pipeline.status(),
        "last_result": scanner.last_result.to_dict() if scanner.last_result else None,
        "endpoints": {
            "health": "/health",
            "status": "/api/status",
            "start_camera": "/start_camera",
            "stop_camera": "/stop_camera",
            "video_feed": "/video_feed",
            "detection_status": "/detection_status",
            "capture": "/capture",
            "latest": "/api/latest",
            "rectify": "/api/rectify"
        }
    })


@app.route("/api/latest", methods=["GET"])
def api_latest():
    """Last completed capture as JPEG"""
    result = scanner.last_result
    if result is None:
        return jsonify({
            "success": False,
            "error": "No document captured yet",
            "error_code": "NO_RESULT"
        }), 404

    response = Response(encode_jpeg(result.image), mimetype='image/jpeg')
    response.headers['X-Rectified'] = 'true' if result.rectified else 'false'
    return response


@app.route("/api/rectify", methods=["POST"])
def api_rectify():
    """
    Rectify an uploaded image.

    Request:
        - multipart/form-data with 'image' file field
        - optional 'corners' form field: JSON corner list or object

    Response:
        JPEG of the rectified document, or of the original when the corners
        are missing or degenerate. The X-Rectified header tells which.
    """
    logger.info("API rectify request received")

    if 'image' not in request.files:
        return jsonify({
            "success": False,
            "error": "No image file provided",
            "error_code": "NO_IMAGE"
        }), 400

    image_file = request.files['image']
    if image_file.filename == '':
        return jsonify({
            "success": False,
            "error": "Empty filename",
            "error_code": "EMPTY_FILENAME"
        }), 400

    data = np.frombuffer(image_file.read(), dtype=np.uint8)
    image = cv2.imdecode(data, cv2.IMREAD_COLOR) if data.size else None
    if image is None:
        return jsonify({
            "success": False,
            "error": "Could not read image file",
            "error_code": "INVALID_IMAGE"
        }), 400

    quad = None
    raw_corners = request.form.get('corners')
    if raw_corners:
        h, w = image.shape[:2]
        try:
            quad = parse_corners(raw_corners, w, h)
        except (ValueError, KeyError, TypeError) as e:
            return jsonify({
                "success": False,
                "error": f"Invalid corners: {e}",
                "error_code": "INVALID_CORNERS"
            }), 400

    try:
        result: RectifiedImage = scanner.rectifier.rectify_or_original(image, quad)
        body = encode_jpeg(result.image)
    except Exception as e:
        return jsonify(handle_error(e, "Rectification request failed")), 500

    response = Response(body, mimetype='image/jpeg')
    response.headers['X-Rectified'] = 'true' if result.rectified else 'false'
    response.headers['X-Image-Size'] = f"{result.size[0]}x{result.size[1]}"
    if result.error:
        response.headers['X-Rectify-Error'] = result.error
    logger.info(f"Rectify response: rectified={result.rectified}, size={result.size}")
    return response


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("DOCUMENT AUTO-CAPTURE SERVER")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_tracking/       - Quad geometry, detection window, stability")
    print("  layer2_capture/        - Camera, detection, capture controller, pipeline")
    print("  layer3_rectification/  - Perspective correction")
    print("\n📡 API Endpoints:")
    print("  GET  /health           - Health check")
    print("  GET  /api/status       - Pipeline status")
    print("  POST /start_camera     - Start live auto-capture")
    print("  POST /stop_camera      - Stop live auto-capture")
    print("  GET  /video_feed       - MJPEG preview with overlay")
    print("  GET  /detection_status - Overlay and stability progress")
    print("  POST /capture          - Manual capture")
    print("  GET  /api/latest       - Last captured document (JPEG)")
    print("  POST /api/rectify      - Rectify an uploaded image")
    print("\n🎥 Camera:")
    print(f"  Device: /dev/video{CAMERA_INDEX}")
    print(f"  Resolution: {CAMERA_WIDTH}x{CAMERA_HEIGHT}")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    logger.info("Flask server starting")
    app.run(host='0.0.0.0', port=5000, debug=False, threaded=True)
