"""
Command Line Entry Point

Usage:
    modelserve --source1.il spot6pms.tif --source1.placeholder x1 \\
        --source1.fovx 16 --source1.fovy 16 --model.dir /tmp/my_model/ \\
        --model.userplaceholders is_training=false dropout=0.0 \\
        --output.names out_predict1 out_proba1 --out classif.tif
    modelserve --nsources 2 --config configs/serve.yaml --finetuning.tilesize 256
"""

import argparse
import logging
import sys
from typing import Dict, List, Optional

from .deployment import load_model
from .errors import ModelServeError
from .pipeline import ModelServePipeline
from .data.raster import RasterSink
from .utils.config import (
    get_int,
    load_config,
    merge_configs,
    parameters_from_config,
    save_config,
    set_dotted
)

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def str2bool(value: str) -> bool:
    lowered = value.lower()
    if lowered in ('1', 'true', 'yes', 'on'):
        return True
    if lowered in ('0', 'false', 'no', 'off'):
        return False
    raise argparse.ArgumentTypeError(f"Expected a boolean, got {value!r}")


def _base_parser(add_help: bool) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Multisource deep learning inference over large rasters. '
                    'The output is a multiband image stacking every requested output '
                    'tensor, in the order given by --output.names.',
        add_help=add_help
    )
    parser.add_argument('--config', type=str, default=None, help='YAML file holding the parameter tree')
    parser.add_argument(
        '--nsources',
        type=int,
        default=None,
        help='Number of input sources (source1 ... sourceN), default 1'
    )
    parser.add_argument('--log-level', type=str, default='INFO', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    parser.add_argument('--log-file', type=str, default=None, help='Also write logs to this file')
    parser.add_argument('--save-config', type=str, default=None, help='Write the effective parameters to YAML')
    parser.add_argument('--dry-run', action='store_true', help='Validate the parameters and exit')
    parser.add_argument('--no-progress', action='store_true', help='Disable the progress bar')
    return parser


def build_parser(n_sources: int) -> argparse.ArgumentParser:
    """Parser with one parameter group per source"""
    parser = _base_parser(add_help=True)
    keep = argparse.SUPPRESS

    for index in range(1, n_sources + 1):
        key = f"source{index}"
        group = parser.add_argument_group(key, f"Parameters for source #{index}")
        group.add_argument(f"--{key}.il", dest=f"{key}.il", nargs='+', default=keep,
                           help=f"Input image (or list to stack) for source #{index}")
        group.add_argument(f"--{key}.fovx", dest=f"{key}.fovx", type=int, default=keep,
                           help=f"Field of view width for source #{index}")
        group.add_argument(f"--{key}.fovy", dest=f"{key}.fovy", type=int, default=keep,
                           help=f"Field of view height for source #{index}")
        group.add_argument(f"--{key}.placeholder", dest=f"{key}.placeholder", default=keep,
                           help=f"Name of the input placeholder for source #{index}")

    group = parser.add_argument_group('model', 'Model parameters')
    group.add_argument('--model.dir', dest='model.dir', default=keep, help='ONNX model file or directory')
    group.add_argument('--model.userplaceholders', dest='model.userplaceholders', nargs='+', default=keep,
                       help='Additional single-valued placeholders (name=value). Supported types: int, float, bool')
    group.add_argument('--model.fullyconv', dest='model.fullyconv', type=str2bool, nargs='?', const=True,
                       default=keep, help='Fully convolutional')

    group = parser.add_argument_group('output', 'Output tensors parameters')
    group.add_argument('--output.names', dest='output.names', nargs='+', default=keep,
                       help='Names of the output tensors')
    group.add_argument('--output.spcscale', dest='output.spcscale', type=float, default=keep,
                       help='The output spacing scale (default 1.0)')
    group.add_argument('--output.foex', dest='output.foex', type=int, default=keep,
                       help='The output field of expression (x), default 1')
    group.add_argument('--output.foey', dest='output.foey', type=int, default=keep,
                       help='The output field of expression (y), default 1')

    group = parser.add_argument_group('finetuning', 'Fine tuning performance or consistency parameters')
    group.add_argument('--finetuning.disabletiling', dest='finetuning.disabletiling', type=str2bool,
                       nargs='?', const=True, default=keep, help='Disable tiling')
    group.add_argument('--finetuning.tilesize', dest='finetuning.tilesize', type=int, default=keep,
                       help='Tile width used to stream the filter output (default 16)')
    group.add_argument('--finetuning.batchsize', dest='finetuning.batchsize', type=int, default=keep,
                       help='Maximum patches per model call, 0 for a whole tile (default 0)')
    group.add_argument('--finetuning.workers', dest='finetuning.workers', type=int, default=keep,
                       help='Threads computing tiles (default 1)')
    group.add_argument('--finetuning.padding', dest='finetuning.padding', choices=['edge', 'constant'],
                       default=keep, help='Border policy for patches exceeding the image (default edge)')

    parser.add_argument('--out', dest='out', default=keep, help='Output image')
    return parser


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(level=getattr(logging, level), format=LOG_FORMAT, handlers=handlers, force=True)


def collect_config(args: argparse.Namespace, n_sources: int) -> Dict:
    """Merge the config file (if any) with the command line parameters"""
    config = load_config(args.config) if args.config else {}
    overrides: Dict = {}
    for key, value in vars(args).items():
        if '.' in key or key == 'out':
            set_dotted(overrides, key, value)
    config = merge_configs(config, overrides)
    config['nsources'] = n_sources
    return config


def source_count(args: argparse.Namespace) -> int:
    """``--nsources``, else the ``nsources`` key of the config file, else 1"""
    if args.nsources is not None:
        return get_int({'nsources': args.nsources}, 'nsources', 1)
    if args.config:
        return get_int(load_config(args.config), 'nsources', 1, default=1)
    return 1


def main(argv: Optional[List[str]] = None) -> int:
    pre_args, _ = _base_parser(add_help=False).parse_known_args(argv)
    setup_logging(pre_args.log_level, pre_args.log_file)

    try:
        n_sources = source_count(pre_args)

        args = build_parser(n_sources).parse_args(argv)
        config = collect_config(args, n_sources)
        params = parameters_from_config(config, n_sources)

        if args.save_config:
            save_config(config, args.save_config)
        if args.dry_run:
            logger.info(f"Parameters are valid: {params.to_dict()}")
            return 0

        logger.info("=" * 80)
        logger.info(f"Serving {params.model_dir} over {n_sources} source(s)")
        logger.info("=" * 80)

        model = load_model(params.model_dir)
        try:
            pipeline = ModelServePipeline.from_parameters(params, model, progress=not args.no_progress)
            pipeline.seal()
        except BaseException:
            model.close()
            raise

        with RasterSink(params.out, pipeline.grid) as sink:
            pipeline.run(sink)

    except ModelServeError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1

    return 0


if __name__ == '__main__':
    sys.exit(main())
