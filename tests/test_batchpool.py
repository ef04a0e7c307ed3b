import allure
from click.testing import CliRunner

from batchpool import __version__
from batchpool.main import batchpool

pytestmark = [
    allure.epic("Batch Dispatch"),
    allure.feature("CLI Surface"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(batchpool, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
