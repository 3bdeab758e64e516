from pathlib import Path

BUILTIN_PIPES_DIR = Path(__file__).resolve().parent
