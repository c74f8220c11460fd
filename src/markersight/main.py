"""
Main entry point for the MARKERSIGHT application.

Runs the marker-based AR demo: a lit 3D object anchored on an ArUco marker,
lifted by a closed-fist gesture.

Usage:
    markersight                             # Run with defaults
    markersight --calibrate                 # Recalibrate the camera first
    markersight --model chair.obj           # Anchor an OBJ model
    markersight --verbose                   # Enable debug logging
"""

from __future__ import annotations

import argparse
import logging
import sys

from .app import ARApplication
from .utils import get_config, setup_logging, validate_config

LOGGER = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="MARKERSIGHT - Marker-based Augmented Reality with OpenGL overlay",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  markersight                              # Run the AR demo
  markersight --video clip.mp4             # Use a recorded video
  markersight --calibration-file cam.yml   # Use another calibration file

Controls (in window):
  SPACE  - Trigger the lift animation
  Q/ESC  - Quit

Make a fist in front of the camera while the marker is visible to lift the object.
        """,
    )

    parser.add_argument("--config", "-c", help="Path to a JSON configuration file")
    parser.add_argument("--camera", type=int, help="Camera index")
    parser.add_argument("--video", help="Video file to use instead of a camera")
    parser.add_argument("--model", "-m", help="OBJ model to anchor on the marker")
    parser.add_argument("--calibration-file", help="Calibration file (YAML/XML/JSON)")
    parser.add_argument(
        "--calibrate",
        action="store_true",
        help="Run interactive chessboard calibration before starting",
    )
    parser.add_argument(
        "--no-vsync",
        action="store_true",
        help="Disable vertical sync",
    )
    parser.add_argument(
        "--verbose", "-V",
        action="store_true",
        help="Enable verbose/debug logging",
    )

    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> dict:
    """Load the configuration and apply command-line overrides."""
    config = get_config(args.config)

    if args.camera is not None:
        config['camera']['camera_id'] = args.camera
    if args.video:
        config['camera']['video_file'] = args.video
    if args.model:
        config['model']['path'] = args.model
    if args.calibration_file:
        config['calibration']['file'] = args.calibration_file
    if args.no_vsync:
        config['render']['vsync'] = False

    return config


def main(argv=None):
    """Main entry point."""
    args = parse_args(argv)

    log_level = logging.DEBUG if args.verbose else logging.INFO
    setup_logging(level=log_level)

    LOGGER.info("Starting MARKERSIGHT...")

    config = build_config(args)
    if not validate_config(config):
        sys.exit(2)

    try:
        app = ARApplication(config, calibrate=args.calibrate)
        code = app.run()
    except Exception as e:
        LOGGER.exception("Application error: %s", e)
        sys.exit(1)

    if code == 0:
        LOGGER.info("MARKERSIGHT exited normally")
    sys.exit(code)


if __name__ == "__main__":
    main()
