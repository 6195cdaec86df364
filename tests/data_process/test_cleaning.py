"""
成交量数据清洗测试
"""

import numpy as np
import pandas as pd
import pytest

from volume_ssm.data_process import clean_data, time_indexed_to_grid
from volume_ssm.exceptions import (
    EmptyResultError,
    InvalidInputError,
    MissingDataWarning,
)
from volume_ssm.utils.diagnostics import DiagnosticLog


@pytest.fixture
def grid() -> pd.DataFrame:
    rng = np.random.default_rng(0)
    values = rng.uniform(100.0, 1000.0, size=(6, 5))
    return pd.DataFrame(values, columns=["d1", "d2", "d3", "d4", "d5"])


class TestCleanData:
    def test_clean_grid_unchanged(self, grid):
        cleaned = clean_data(grid)
        pd.testing.assert_frame_equal(cleaned, grid)

    def test_drop_day_with_single_missing_bin(self, grid):
        grid.loc[2, "d3"] = np.nan

        with pytest.warns(MissingDataWarning, match="Remove trading days with missing bins: d3"):
            cleaned = clean_data(grid)

        assert cleaned.shape == (6, 4)
        assert list(cleaned.columns) == ["d1", "d2", "d4", "d5"]

    def test_warning_lists_every_dropped_day(self, grid):
        grid.loc[0, "d1"] = np.nan
        grid.loc[1, "d4"] = np.nan

        with pytest.warns(
            MissingDataWarning,
            match="For input matrix:\n Remove trading days with missing bins: d1, d4.",
        ):
            cleaned = clean_data(grid)
        assert list(cleaned.columns) == ["d2", "d3", "d5"]

    def test_dropped_days_recorded_in_log(self, grid):
        grid.loc[3, "d2"] = np.nan
        log = DiagnosticLog()

        with pytest.warns(MissingDataWarning):
            clean_data(grid, log=log)

        assert len(log) == 1
        record = log.records[0]
        assert record.category == "MissingDataWarning"
        assert record.fields["dropped_days"] == ["d2"]

    def test_numpy_array_uses_column_positions(self, grid):
        values = grid.to_numpy()
        values[0, 2] = np.nan

        with pytest.warns(MissingDataWarning, match="missing bins: 2"):
            cleaned = clean_data(values)

        assert isinstance(cleaned, pd.DataFrame)
        assert list(cleaned.columns) == [0, 1, 3, 4]
        np.testing.assert_array_equal(cleaned[3].to_numpy(), values[:, 3])

    def test_all_days_missing(self, grid):
        grid.iloc[0, :] = np.nan
        with pytest.warns(MissingDataWarning):
            with pytest.raises(EmptyResultError):
                clean_data(grid)

    @pytest.mark.parametrize(
        "data",
        [
            np.array([1.0, 1.0]),
            np.ones((2, 2, 2)),
            [[1.0, 2.0], [3.0, 4.0]],
            np.array([["a", "b"], ["c", "d"]]),
        ],
    )
    def test_rejects_invalid_input(self, data):
        with pytest.raises(InvalidInputError):
            clean_data(data)

    def test_rejects_non_numeric_frame(self, grid):
        grid["d6"] = "x"
        with pytest.raises(InvalidInputError, match="non-numeric"):
            clean_data(grid)

    def test_rejects_non_positive_volume(self, grid):
        grid.loc[1, "d5"] = 0.0
        with pytest.raises(InvalidInputError, match="d5"):
            clean_data(grid)


class TestTimeIndexedInput:
    @pytest.fixture
    def series(self) -> pd.Series:
        index = pd.DatetimeIndex(
            [
                f"2024-01-0{day} {hour}:00"
                for day in (2, 3, 4)
                for hour in ("09", "10", "11", "12")
            ]
        )
        return pd.Series(np.arange(1.0, 13.0), index=index, name="volume")

    def test_pivot_to_bins_by_days(self, series):
        grid = time_indexed_to_grid(series)

        assert grid.shape == (4, 3)
        assert [str(day) for day in grid.columns] == [
            "2024-01-02",
            "2024-01-03",
            "2024-01-04",
        ]
        np.testing.assert_array_equal(grid.iloc[:, 0].to_numpy(), [1.0, 2.0, 3.0, 4.0])

    def test_missing_timestamp_drops_day(self, series):
        series = series.drop(series.index[5])

        with pytest.warns(
            MissingDataWarning,
            match="For input time-indexed table:\n Remove trading days with missing bins: 2024-01-03",
        ):
            cleaned = clean_data(series)
        assert cleaned.shape == (4, 2)

    def test_single_column_frame(self, series):
        cleaned = clean_data(series.to_frame())
        assert cleaned.shape == (4, 3)

    def test_multi_column_frame_rejected_by_pivot(self, series):
        frame = pd.DataFrame({"a": series, "b": series})
        with pytest.raises(InvalidInputError, match="exactly one column"):
            time_indexed_to_grid(frame)

    def test_grid_with_timestamp_bin_labels(self, grid):
        """bin 标签为时间戳的多日矩阵仍按矩阵处理"""
        grid.index = pd.date_range("2024-01-02 09:30", periods=6, freq="1h")

        cleaned = clean_data(grid)

        assert cleaned.shape == (6, 5)
        assert list(cleaned.columns) == ["d1", "d2", "d3", "d4", "d5"]
        pd.testing.assert_frame_equal(cleaned, grid)

    def test_duplicated_timestamp_rejected(self, series):
        series = pd.concat([series, series.iloc[:1]])
        with pytest.raises(InvalidInputError, match="duplicated"):
            clean_data(series)
