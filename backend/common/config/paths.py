"""Path configuration for the backend."""
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parents[2]
load_dotenv(dotenv_path=BASE_DIR / ".env")

# Directories
MODELS_DIR = BASE_DIR / "models"
DATA_DIR = BASE_DIR / "data"

DEFAULT_MODEL_PATH = MODELS_DIR / "detector.onnx"
DEFAULT_DATABASE_PATH = DATA_DIR / "pipeline.db"
