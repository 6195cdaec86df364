from .cleaning import clean_data, time_indexed_to_grid, to_volume_grid

__all__ = ["clean_data", "time_indexed_to_grid", "to_volume_grid"]
