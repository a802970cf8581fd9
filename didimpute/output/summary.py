"""Summary tables for imputation results.

Renders the tidy result table as plain text or LaTeX with ``tabulate``.
Estimates are shown with their standard errors and normal confidence
intervals; p-values and significance stars are not reported.
"""

from __future__ import annotations

import re
from typing import TYPE_CHECKING, Any, cast

import numpy as np
import pandas as pd
from tabulate import tabulate

if TYPE_CHECKING:
    from didimpute.estimators.imputation import ImputationResult

__all__ = ["escape_latex", "modelsummary", "summary"]

_TABLE_COLUMNS = ["estimate", "standard_error", "conf_low", "conf_high"]


def escape_latex(obj: Any) -> str:
    """Minimal LaTeX escaping (consistent with tabulate's expectations)."""
    text = str(obj)
    replacements = {
        "\\": r"\textbackslash{}",
        "&": r"\&",
        "%": r"\%",
        "$": r"\$",
        "#": r"\#",
        "_": r"\_",
        "{": r"\{",
        "}": r"\}",
        "~": r"\textasciitilde{}",
        "^": r"\textasciicircum{}",
    }
    return re.sub(
        "|".join(re.escape(k) for k in replacements),
        lambda m: replacements[m.group(0)],
        text,
    )


def _fmt(val: Any, spec: str) -> str:
    try:
        x = float(val)
    except (TypeError, ValueError):
        return "" if val is None else str(val)
    if not np.isfinite(x):
        return "NaN"
    return format(x, spec)


def _as_table(result: ImputationResult | pd.DataFrame) -> pd.DataFrame:
    table = result if isinstance(result, pd.DataFrame) else result.table
    missing = [c for c in ("term", *_TABLE_COLUMNS) if c not in table.columns]
    if missing:
        raise KeyError(f"Result table lacks columns: {missing}")
    return table


def _footer(result: ImputationResult | pd.DataFrame) -> list[tuple[str, str]]:
    if isinstance(result, pd.DataFrame):
        return []
    info = result.model_info
    extra = result.extra
    rows = [
        ("Observations", str(result.n_obs)),
        ("Treated obs.", str(extra.get("n_treated", ""))),
        ("Untreated obs. (fit)", str(extra.get("n_untreated_fit", ""))),
        ("First stage", str(info.get("FirstStage", ""))),
        ("CI level", _fmt(info.get("CI level"), "g")),
    ]
    if extra.get("n_non_imputable"):
        rows.append(("Non-imputable treated", str(extra["n_non_imputable"])))
    if extra.get("singular"):
        rows.append(("Singular projections", ", ".join(extra["singular"])))
    return rows


def summary(  # noqa: PLR0913
    result: ImputationResult | pd.DataFrame,
    *,
    output: str = "text",
    coef_format: str = ".4f",
    latex_booktabs: bool = True,
    escape: bool = True,
    show_footer: bool = True,
) -> str:
    """Render one result as a term-by-column table.

    Parameters
    ----------
    result : ImputationResult or pandas.DataFrame
        A fitted result, or the tidy table returned by ``did_imputation``.
    output : {"text", "latex"}
        Plain text grid or a LaTeX ``tabular``.
    coef_format : str
        Format spec applied to every numeric cell.
    show_footer : bool
        Append sample sizes and first-stage information (fitted results only).
    """
    if output not in {"text", "latex"}:
        raise ValueError("output must be either 'text' or 'latex'.")
    table = _as_table(result)
    headers = ["Term", "Estimate", "Std. Error", "CI low", "CI high"]
    body = [
        [str(r["term"]), *(_fmt(r[c], coef_format) for c in _TABLE_COLUMNS)]
        for _, r in table.iterrows()
    ]
    footer = [[k, v, "", "", ""] for k, v in _footer(result)] if show_footer else []
    if output == "latex":
        if escape:
            body = [[escape_latex(c) for c in row] for row in body]
            footer = [[escape_latex(c) for c in row] for row in footer]
        tablefmt = "latex_booktabs" if latex_booktabs else "latex"
        rendered = cast(
            "str",
            tabulate(
                body + footer,
                headers=headers,
                stralign="center",
                tablefmt=tablefmt,
                disable_numparse=True,
            ),
        )
        if footer:
            # rule between the estimates and the footer rows
            lines = rendered.splitlines()
            first_footer = footer[0][0]
            for i, ln in enumerate(lines):
                if ln.lstrip().startswith(first_footer):
                    lines.insert(i, r"\midrule")
                    break
            rendered = "\n".join(lines)
        return rendered
    sep = [["" for _ in headers]] if footer else []
    return cast(
        "str",
        tabulate(body + sep + footer, headers=headers, stralign="center", disable_numparse=True),
    )


def modelsummary(
    results: list[ImputationResult],
    model_names: list[str] | None = None,
    *,
    output: str = "text",
    coef_format: str = ".4f",
) -> str:
    """Side-by-side table of several results: estimates with standard errors below.

    Terms are aligned by label; a term missing from a model is left blank.
    """
    if model_names is None:
        model_names = [f"({i + 1})" for i in range(len(results))]
    if len(model_names) != len(results):
        raise ValueError("model_names must have one entry per result.")
    if output not in {"text", "latex"}:
        raise ValueError("output must be either 'text' or 'latex'.")
    tables = [_as_table(r) for r in results]
    terms: list[str] = []
    for t in tables:
        for term in t["term"].astype(str):
            if term not in terms:
                terms.append(term)
    rows: list[list[str]] = []
    for term in terms:
        est_row = [term]
        se_row = [""]
        for t in tables:
            hit = t.loc[t["term"].astype(str) == term]
            if hit.empty:
                est_row.append("")
                se_row.append("")
            else:
                est_row.append(_fmt(hit["estimate"].iloc[0], coef_format))
                se_row.append(f"({_fmt(hit['standard_error'].iloc[0], coef_format)})")
        rows.extend([est_row, se_row])
    rows.append(["" for _ in range(len(results) + 1)])
    rows.append(["N", *(str(getattr(r, "n_obs", "")) for r in results)])
    headers = ["", *model_names]
    if output == "latex":
        rows = [[escape_latex(c) for c in row] for row in rows]
        headers = [escape_latex(h) for h in headers]
        return cast(
            "str",
            tabulate(
                rows,
                headers=headers,
                stralign="center",
                tablefmt="latex_booktabs",
                disable_numparse=True,
            ),
        )
    return cast(
        "str", tabulate(rows, headers=headers, stralign="center", disable_numparse=True),
    )
