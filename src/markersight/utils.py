"""
Shared helper functions and utilities.

Logging setup and the JSON configuration layer used by the CLI and the
application loop.
"""

import copy
import json
import logging
import os


def setup_logging(level=logging.INFO):
    """Set up logging configuration.

    Args:
        level: Logging level (default: INFO)
    """
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    logger = logging.getLogger(__name__)
    logger.info("Logging initialized")


DEFAULT_CONFIG = {
    # Video settings
    'camera': {
        'camera_id': 0,
        'video_file': None,
        'width': 640,
        'height': 480,
        'fps': 30,
        'backend_priority': None,
        'init_attempts': 10,
    },

    # Camera calibration
    'calibration': {
        'file': 'calibration_data.yml',
        'board_size': [9, 6],  # internal corners (columns, rows)
        'square_size': 0.025,  # meters
        'required_views': 20,
        'max_missed_frames': 30,  # consecutive empty captures before giving up
    },

    # Marker detection
    'marker': {
        'dictionary': 'DICT_6X6_250',
        'marker_length': 0.05,  # meters
        'draw_axes': False,
    },

    # Gesture trigger
    'gesture': {
        'enabled': True,
        'policy': 'closed',  # 'closed' (fist) or 'open'
        'lower_hsv': [0, 48, 80],
        'upper_hsv': [20, 255, 255],
        'min_area': 8000,
        'defect_depth': 20.0,
        'kernel_size': 7,
    },

    # OpenGL rendering
    'render': {
        'window_title': 'MARKERSIGHT',
        'near': 0.1,
        'far': 100.0,
        'clear_color': [0.1, 0.1, 0.1, 1.0],
        'model_scale': 0.001,  # asset millimeters -> meters
        'base_rotation': [90.0, 0.0, 0.0],  # degrees about X, Y, Z
        'light_position': [0.5, 0.5, 0.5],
        'light_color': [1.0, 1.0, 1.0],
        'ambient_strength': 0.2,
        'specular_strength': 0.8,
        'shininess': 32.0,
        'resize_background': True,
        'vsync': True,
    },

    # Lift animation
    'animation': {
        'duration': 1.0,  # seconds
        'peak_height': 0.05,  # meters
        'axis': [0.0, 0.0, 1.0],  # marker normal
    },

    # Model
    'model': {
        'path': None,  # OBJ file; procedural cube when unset
        'cube_size': 50.0,  # asset units, scaled by render.model_scale
        'cube_color': [0.2, 0.6, 1.0],
        'normalize_size': None,  # rescale the OBJ to this size in asset units
    },

    # Application loop
    'app': {
        'max_missed_frames': 30,
    },
}


def merge_config(base, override):
    """Recursively merge ``override`` into a copy of ``base``.

    Nested sections are merged key by key; any other value replaces the
    default outright.
    """
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def get_config(config_path=None):
    """Load configuration from file or return defaults.

    Args:
        config_path: Path to JSON configuration file (optional)

    Returns:
        dict: Configuration dictionary
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path and os.path.exists(config_path):
        try:
            with open(config_path, 'r') as f:
                loaded_config = json.load(f)
            config = merge_config(config, loaded_config)
            logging.info(f"Configuration loaded from {config_path}")
        except (OSError, ValueError) as e:
            logging.warning(f"Failed to load config from {config_path}: {e}")
    elif config_path:
        logging.warning(f"Config file not found: {config_path}, using defaults")

    return config


def save_config(config, config_path):
    """Save configuration to file.

    Args:
        config: Configuration dictionary
        config_path: Path to save configuration file

    Returns:
        bool: True if save successful, False otherwise
    """
    try:
        with open(config_path, 'w') as f:
            json.dump(config, f, indent=4)
        logging.info(f"Configuration saved to {config_path}")
        return True
    except (OSError, TypeError) as e:
        logging.error(f"Failed to save config to {config_path}: {e}")
        return False


def validate_config(config):
    """Validate configuration parameters.

    Args:
        config: Configuration dictionary

    Returns:
        bool: True if valid, False otherwise
    """
    for section in ('camera', 'calibration', 'marker', 'render', 'animation'):
        if not isinstance(config.get(section), dict):
            logging.error(f"Missing required config section: {section}")
            return False

    camera = config['camera']
    if camera.get('width', 0) <= 0 or camera.get('height', 0) <= 0:
        logging.error("Video dimensions must be positive")
        return False

    render = config['render']
    near, far = render.get('near', 0), render.get('far', 0)
    if near <= 0 or far <= near:
        logging.error(f"Clip planes must satisfy 0 < near < far (near={near}, far={far})")
        return False

    if config['marker'].get('marker_length', 0) <= 0:
        logging.error("Marker length must be positive")
        return False

    if config['animation'].get('duration', 0) <= 0:
        logging.error("Animation duration must be positive")
        return False

    policy = config.get('gesture', {}).get('policy', 'closed')
    if policy not in ('closed', 'open', 'pointing'):
        logging.error(f"Unknown gesture policy: {policy}")
        return False

    logging.info("Configuration validated successfully")
    return True
