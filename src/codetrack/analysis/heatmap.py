"""Contribution heatmap: one cell per day with a 0-4 intensity level."""
from dataclasses import dataclass
from datetime import date, timedelta
from typing import List, Mapping


@dataclass
class HeatmapDay:
    date: date
    count: int
    level: int


def heatmap_level(count: int) -> int:
    """0 → 0, 1-2 → 1, 3-5 → 2, 6-10 → 3, more → 4."""
    if count <= 0:
        return 0
    if count <= 2:
        return 1
    if count <= 5:
        return 2
    if count <= 10:
        return 3
    return 4


def heatmap(commits_by_day: Mapping[date, int], today: date, window_days: int = 90) -> List[HeatmapDay]:
    """`window_days` cells ending today, oldest first."""
    cells = []
    for offset in range(window_days - 1, -1, -1):
        d = today - timedelta(days=offset)
        count = commits_by_day.get(d, 0)
        cells.append(HeatmapDay(date=d, count=count, level=heatmap_level(count)))
    return cells
