import numpy as np
import pandas as pd
import matplotlib.pyplot as plt

LABELS = {
    ("development", "epred"): "Development time (days)",
    ("fecundity", "mu"): "Fecundity, absent retention (eggs)",
    ("fecundity", "zi"): "Retention probability",
    ("fecundity", "epred"): "Fecundity (eggs)",
    ("dispersal", "epred"): "Dispersal probability",
}


def plot_species_estimates(
    species_summary: pd.DataFrame,
    line_summary: pd.DataFrame = None,
    save_path: str = None,
) -> plt.Figure:
    """Species means with HDI bars, one panel per reported quantity; line means as open dots."""
    keys = list(species_summary.groupby(["response", "quantity"], sort=False).groups)
    fig, axes = plt.subplots(1, len(keys), figsize=(3.2 * len(keys), 4), squeeze=False)

    for ax, key in zip(axes[0], keys):
        sel = species_summary[(species_summary["response"] == key[0]) &
                              (species_summary["quantity"] == key[1])]
        species = list(sel["species"].astype(str))
        x = np.arange(len(species))
        ax.errorbar(x, sel["mean"], yerr=[sel["mean"] - sel["lower"], sel["upper"] - sel["mean"]],
                    fmt='o', color='#2c3e50', capsize=3, markersize=6, zorder=3)

        if line_summary is not None:
            lines = line_summary[(line_summary["response"] == key[0]) &
                                 (line_summary["quantity"] == key[1])]
            pos = {s: i for i, s in enumerate(species)}
            jitter = np.random.default_rng(0).uniform(-0.15, 0.15, len(lines))
            ax.scatter([pos[s] for s in lines["species"].astype(str)] + jitter, lines["mean"],
                       facecolors='none', edgecolors='#e74c3c', s=20, alpha=0.7, zorder=2)

        ax.set_xticks(x)
        ax.set_xticklabels(species, rotation=45, ha='right', fontsize=8)
        ax.set_title(LABELS.get(key, f"{key[0]} ({key[1]})"), fontsize=9)

    plt.tight_layout()
    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
    return fig


def plot_correlations(correlations: pd.DataFrame, save_path: str = None) -> plt.Figure:
    """Line-level correlations with HDIs, one row per pair of terms and model."""
    fig, ax = plt.subplots(figsize=(7, 0.45 * len(correlations) + 1.5))
    y = np.arange(len(correlations))
    colors = {"within-species": '#E63946', "total": '#457B9D'}
    for scope, sel in correlations.reset_index(drop=True).groupby("scope", sort=False):
        ax.errorbar(sel["mean"], y[sel.index],
                    xerr=[sel["mean"] - sel["lower"], sel["upper"] - sel["mean"]],
                    fmt='o', capsize=3, color=colors.get(scope, 'black'), label=scope)
    ax.axvline(0, color='gray', linestyle='--', alpha=0.5)
    ax.set_yticks(y)
    ax.set_yticklabels(correlations["pair"], fontsize=8)
    ax.set_xlim(-1, 1)
    ax.set_xlabel('Line-level correlation')
    ax.legend(fontsize=8)
    plt.tight_layout()
    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
    return fig


def plot_zero_check(checks: pd.DataFrame, save_path: str = None) -> plt.Figure:
    """Observed vs replicated zero frequency for each fecundity model."""
    models = list(checks["model"].unique())
    fig, axes = plt.subplots(1, len(models), figsize=(5 * len(models), 4), squeeze=False)
    for ax, name in zip(axes[0], models):
        sel = checks[checks["model"] == name].reset_index(drop=True)
        x = np.arange(len(sel))
        ax.errorbar(x, sel["replicated_mean"],
                    yerr=[sel["replicated_mean"] - sel["lower"], sel["upper"] - sel["replicated_mean"]],
                    fmt='o', capsize=3, color='#457B9D', label='replicated')
        ax.scatter(x, sel["observed"], marker='x', s=60, color='#E63946', label='observed', zorder=3)
        ax.set_xticks(x)
        ax.set_xticklabels(sel["species"].astype(str), rotation=45, ha='right', fontsize=8)
        ax.set_ylabel('Proportion of zero counts')
        ax.set_title(name.replace("_", " "))
        ax.legend(fontsize=8)
    plt.tight_layout()
    if save_path:
        plt.savefig(save_path, dpi=150, bbox_inches='tight')
    return fig
