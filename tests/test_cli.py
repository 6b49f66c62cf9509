from click.testing import CliRunner

from meshdrop.cli import cli, format_size


def test_format_size():
    assert format_size(512) == '512.0 B'
    assert format_size(1_000_000) == '976.6 KB'
    assert format_size(3 * 1024 ** 3) == '3.0 GB'


def test_config_command():
    runner = CliRunner()
    result = runner.invoke(cli, ['--relay', 'wss://relay.cli', 'config'], obj={})
    assert result.exit_code == 0
    assert 'Example config.json' in result.output
    assert 'wss://relay.cli' in result.output


def test_share_requires_existing_file(tmp_path):
    runner = CliRunner()
    result = runner.invoke(cli, ['share', str(tmp_path / 'absent.bin')], obj={})
    assert result.exit_code == 2
