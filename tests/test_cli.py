import numpy as np
import pytest
import rasterio
import yaml
from rasterio.transform import from_origin

from conftest import patch_stats_reference
from modelserve.cli import build_parser, main, source_count, str2bool
from modelserve.errors import ConfigurationError

TRANSFORM = from_origin(300000, 5000000, 6, 6)


@pytest.fixture
def source_tif(tmp_path, image):
    path = tmp_path / 'spot6pms.tif'
    with rasterio.open(
        path, 'w', driver='GTiff', width=image.shape[2], height=image.shape[1], count=image.shape[0],
        dtype='float32', transform=TRANSFORM, crs='EPSG:32631'
    ) as dst:
        dst.write(image)
    return path


def serve_args(source_tif, model_dir, out):
    return [
        '--source1.il', str(source_tif),
        '--source1.fovx', '8',
        '--source1.fovy', '8',
        '--source1.placeholder', 'x1',
        '--model.dir', str(model_dir),
        '--model.userplaceholders', 'scale=2.0',
        '--output.names', 'out_predict1', 'out_proba1',
        '--finetuning.tilesize', '16',
        '--out', str(out),
        '--no-progress',
    ]


def test_end_to_end(tmp_path, image, source_tif, onnx_model_dir):
    out = tmp_path / 'classif.tif'
    assert main(serve_args(source_tif, onnx_model_dir, out)) == 0

    with rasterio.open(out) as src:
        assert (src.count, src.width, src.height) == (4, 45, 37)
        assert src.transform.almost_equals(TRANSFORM)
        assert src.crs.to_epsg() == 32631
        np.testing.assert_allclose(src.read(), patch_stats_reference(image, 8, 2.0), rtol=1e-5)


def test_dry_run_does_not_load_the_model(tmp_path, source_tif):
    args = serve_args(source_tif, tmp_path / 'no_model', tmp_path / 'out.tif') + ['--dry-run']
    assert main(args) == 0
    assert not (tmp_path / 'out.tif').exists()


def test_config_file_with_overrides(tmp_path, source_tif, onnx_model_dir):
    config = {
        'source1': {'il': [str(source_tif)], 'fovx': 8, 'fovy': 8, 'placeholder': 'x1'},
        'model': {'dir': str(onnx_model_dir), 'userplaceholders': 'scale=1.0'},
        'output': {'names': ['out_proba1']},
        'finetuning': {'tilesize': 256},
        'out': str(tmp_path / 'out.tif'),
    }
    config_path = tmp_path / 'serve.yaml'
    config_path.write_text(yaml.safe_dump(config))
    saved = tmp_path / 'effective.yaml'

    args = ['--config', str(config_path), '--finetuning.tilesize', '32', '--save-config', str(saved), '--dry-run']
    assert main(args) == 0

    with open(saved) as f:
        effective = yaml.safe_load(f)
    assert effective['finetuning']['tilesize'] == 32
    assert effective['model']['dir'] == str(onnx_model_dir)
    assert effective['nsources'] == 1


def test_missing_parameter_fails(tmp_path, source_tif, onnx_model_dir):
    args = serve_args(source_tif, onnx_model_dir, tmp_path / 'out.tif')
    args.remove('--source1.placeholder')
    args.remove('x1')
    assert main(args) == 1


def test_declared_sources_are_required(tmp_path, source_tif, onnx_model_dir):
    args = serve_args(source_tif, onnx_model_dir, tmp_path / 'out.tif')
    assert main(['--nsources', '2'] + args) == 1


def test_missing_image_fails(tmp_path, onnx_model_dir):
    out = tmp_path / 'out.tif'
    assert main(serve_args(tmp_path / 'missing.tif', onnx_model_dir, out)) == 1
    assert not out.exists()


def test_missing_model_fails(tmp_path, source_tif):
    assert main(serve_args(source_tif, tmp_path / 'no_model', tmp_path / 'out.tif')) == 1


def test_unknown_output_fails(tmp_path, source_tif, onnx_model_dir):
    args = serve_args(source_tif, onnx_model_dir, tmp_path / 'out.tif')
    args[args.index('out_proba1')] = 'out_label'
    assert main(args) == 1


def test_parser_options_per_source():
    args = build_parser(2).parse_args([
        '--source2.il', 'a.tif', 'b.tif', '--source2.fovx', '4', '--model.fullyconv',
        '--finetuning.disabletiling', 'false'
    ])
    options = vars(args)
    assert options['source2.il'] == ['a.tif', 'b.tif']
    assert options['source2.fovx'] == 4
    assert options['model.fullyconv'] is True
    assert options['finetuning.disabletiling'] is False
    assert 'output.names' not in options


@pytest.mark.parametrize('text, expected', [('true', True), ('ON', True), ('0', False), ('no', False)])
def test_str2bool(text, expected):
    assert str2bool(text) is expected


def test_non_integer_source_count_fails(tmp_path, source_tif):
    config_path = tmp_path / 'serve.yaml'
    config_path.write_text(yaml.safe_dump({'nsources': 'two', 'source1': {'il': [str(source_tif)]}}))
    assert main(['--config', str(config_path), '--dry-run']) == 1


@pytest.mark.parametrize('argv, config', [
    (['--nsources', '0'], None),
    ([], {'nsources': 'two'}),
    ([], {'nsources': 1.5}),
])
def test_source_count_is_validated(tmp_path, argv, config):
    if config is not None:
        config_path = tmp_path / 'serve.yaml'
        config_path.write_text(yaml.safe_dump(config))
        argv = argv + ['--config', str(config_path)]
    args, _ = build_parser(1).parse_known_args(argv)
    with pytest.raises(ConfigurationError) as info:
        source_count(args)
    assert info.value.key == 'nsources'
