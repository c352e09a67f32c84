#!/usr/bin/env python
"""
Model Serving Script

Runs a frozen ONNX model over one or more co-registered rasters

Usage:
    python scripts/serve.py --config configs/serve.yaml
    python scripts/serve.py --nsources 2 --config configs/serve.yaml --finetuning.disabletiling
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from modelserve.cli import main


if __name__ == '__main__':
    sys.exit(main())
