"""
Tests for the costsync command line interface.
"""

import json
from datetime import date, timedelta

import pytest
from click.testing import CliRunner

from costsync.main import cli, load_daily_points


@pytest.fixture
def runner():
    return CliRunner()


def write_series(tmp_path, days, daily_cost=100.0, start=date(2024, 3, 1)):
    path = tmp_path / "daily.json"
    data = [{"date": (start + timedelta(days=i)).isoformat(), "cost": daily_cost} for i in range(days)]
    # out of order on purpose
    path.write_text(json.dumps(list(reversed(data))))
    return path


class TestLoadDailyPoints:
    def test_sorted_oldest_first(self, tmp_path):
        points = load_daily_points(str(write_series(tmp_path, 3)))
        assert [point.date for point in points] == [date(2024, 3, 1), date(2024, 3, 2), date(2024, 3, 3)]


class TestCLI:
    def test_providers(self, runner):
        result = runner.invoke(cli, ["providers"])

        assert result.exit_code == 0
        lines = result.output.strip().splitlines()
        assert len(lines) == 8
        assert any(line.startswith("digitalocean") and "aliases: do" in line for line in lines)
        assert any(line.startswith("ibm") and "invoice" in line for line in lines)

    def test_forecast(self, runner, tmp_path):
        path = write_series(tmp_path, 15)

        result = runner.invoke(cli, ["forecast", str(path)])

        assert result.exit_code == 0, result.output
        assert "As of:         2024-03-15" in result.output
        assert "Current month: $1,500.00" in result.output
        assert "Forecast:      $3,100.00" in result.output

    def test_forecast_as_of(self, runner, tmp_path):
        path = write_series(tmp_path, 15)

        result = runner.invoke(cli, ["forecast", str(path), "--as-of", "2024-03-10"])

        assert result.exit_code == 0, result.output
        assert "Current month: $1,000.00" in result.output

    def test_forecast_empty_file(self, runner, tmp_path):
        path = tmp_path / "empty.json"
        path.write_text("[]")

        result = runner.invoke(cli, ["forecast", str(path)])

        assert result.exit_code == 1

    def test_project_json(self, runner, tmp_path):
        path = write_series(tmp_path, 20)

        result = runner.invoke(cli, ["project", str(path), "--months", "3", "--json"])

        assert result.exit_code == 0, result.output
        projections = json.loads(result.output)
        assert [p["month"] for p in projections] == ["2024-04", "2024-05", "2024-06"]
        assert all(p["forecast"] == 3000.0 for p in projections)

    def test_project_table(self, runner, tmp_path):
        result = runner.invoke(cli, ["project", str(write_series(tmp_path, 20)), "-m", "2"])

        assert result.exit_code == 0
        assert "2024-04" in result.output
        assert "3,000.00" in result.output

    def test_project_needs_two_weeks(self, runner, tmp_path):
        result = runner.invoke(cli, ["project", str(write_series(tmp_path, 10))])

        assert result.exit_code == 1

    def test_config_info(self, runner):
        result = runner.invoke(cli, ["config-info"])

        assert result.exit_code == 0, result.output
        assert "Max attempts: 3" in result.output
        assert "Max workers: 4" in result.output
        assert "Anomaly threshold: 20" in result.output
