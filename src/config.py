import os
import logging
import yaml

# -- Project Root --
# Dynamically determine the project root directory
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
CONFIG_PATH = os.environ.get('NATURAL_IMAGE_CONFIG', os.path.join(PROJECT_ROOT, 'config.yml'))

# Load config from YAML file (built-in defaults apply when it is missing)
config = {}
if os.path.exists(CONFIG_PATH):
    with open(CONFIG_PATH, 'r') as f:
        config = yaml.safe_load(f) or {}

# -- Pyramid Settings --
PYRAMID_CONFIG = config.get('PYRAMID', {})
PYRAMID_SCALE_FACTOR = PYRAMID_CONFIG.get('scale_factor', 0.8)
PYRAMID_MIN_SIZE = PYRAMID_CONFIG.get('min_size', 32)
PYRAMID_MAX_LEVELS = PYRAMID_CONFIG.get('max_levels', 8)
DEFAULT_PHYSICAL_WIDTH = PYRAMID_CONFIG.get('default_physical_width', 0.1)
DEFAULT_CHANNELS = PYRAMID_CONFIG.get('channels', 4)

# -- RANSAC Settings --
RANSAC_CONFIG = config.get('RANSAC', {})
RANSAC_MAX_ITERATIONS = RANSAC_CONFIG.get('max_iterations', 1000)
RANSAC_THRESHOLD = RANSAC_CONFIG.get('threshold', 3.0)
RANSAC_MIN_INLIERS = RANSAC_CONFIG.get('min_inliers', 8)
RANSAC_CONFIDENCE = RANSAC_CONFIG.get('confidence', 0.99)

# -- Tracker Settings --
TRACKER_CONFIG = config.get('TRACKER', {})
MAX_IMAGES = TRACKER_CONFIG.get('max_images', 5)
DETECTION_INTERVAL = TRACKER_CONFIG.get('detection_interval', 5)
MIN_MATCH_COUNT = TRACKER_CONFIG.get('min_match_count', 15)

# -- Logging --
LOGGING_CONFIG = config.get('LOGGING', {})
LOG_LEVEL = LOGGING_CONFIG.get('level', 'INFO')


def setup_logging(level=None):
    """Configure root logging for applications embedding the tracker."""
    logging.basicConfig(level=level or LOG_LEVEL, format='%(asctime)s - %(levelname)s - %(message)s')
