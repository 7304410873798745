"""Diagnostic figure for an evaluation table.

Left panel: overlap measures per rater (grouped bars).
Right panel: surface-distance statistics per rater (grouped bars, mm).
"""

import matplotlib
matplotlib.use("Agg")

import matplotlib.pyplot as plt
import numpy as np

from refseg.overlap import OVERLAP_FIELDS
from refseg.report import SURFACE_COLUMNS
from refseg.surface_distance import SURFACE_FIELDS


def _grouped_bars(ax, table, columns, labels):
    raters = table.raters
    x = np.arange(len(raters))
    width = 0.8 / len(columns)
    for i, (col, lab) in enumerate(zip(columns, labels)):
        values = np.nan_to_num(table.column(col), nan=0.0)
        ax.bar(x + (i - (len(columns) - 1) / 2) * width, values, width, label=lab)
    ax.set_xticks(x)
    ax.set_xticklabels(raters, rotation=30, ha="right")
    ax.legend(fontsize=7)


def plot_evaluation(table, path, title=None):
    """Save overlap and surface-distance bar charts side by side."""
    if len(table) == 0:
        print("  WARNING: empty evaluation table, no figure written")
        return

    fig, (ax_ov, ax_sd) = plt.subplots(1, 2, figsize=(12, 4.5))

    _grouped_bars(ax_ov, table, list(OVERLAP_FIELDS),
                  [f.replace("_", " ") for f in OVERLAP_FIELDS])
    ax_ov.set_title("Overlap measures")
    ax_ov.axhline(0.0, color="k", linewidth=0.5)

    sd_cols = [SURFACE_COLUMNS[f] for f in SURFACE_FIELDS]
    if "hausdorff_distance" in table.columns:
        sd_cols.append("hausdorff_distance")
    _grouped_bars(ax_sd, table, sd_cols,
                  [c.replace("_surface_distance", "").replace("_", " ")
                   for c in sd_cols])
    ax_sd.set_title("Surface distance to reference")
    ax_sd.set_ylabel("mm")

    if title:
        fig.suptitle(title)
    fig.tight_layout()
    fig.savefig(str(path), dpi=120)
    plt.close(fig)
    print(f"  Saved {path}")
