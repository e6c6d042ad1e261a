import allure
from click.testing import CliRunner

from lesson_forge import __version__
from lesson_forge.main import lesson_forge

pytestmark = [
    allure.epic("Operator CLI"),
    allure.feature("Entrypoint"),
]


def test_version():
    assert __version__


def test_version_option():
    runner = CliRunner()
    result = runner.invoke(lesson_forge, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output
