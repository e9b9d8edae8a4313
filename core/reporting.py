# ================================================================
# File     : core/reporting.py
# Purpose  : Self-contained HTML pages for module results: KPI
#            tiles, standouts, Chart.js charts, a summary table and
#            one sortable table per list-of-dict section.
# Notes    : Modules add their own CSS/JS via _inline_css/_inline_js;
#            the multi-module page puts each module in a tab.
# ================================================================

import os, html, datetime, re, json
from decimal import Decimal
from typing import Dict, Any, List, Optional, Tuple

from core.utils import fncPrintMessage

CHARTJS_TAG = '<script src="https://cdn.jsdelivr.net/npm/chart.js@4.4.1/dist/chart.umd.min.js"></script>'

# keys that drive layout rather than becoming tables
_RESERVED_KEYS = {
    "summary", "_inline_css", "_inline_js", "_container_class", "_title", "_subtitle",
    "_section_titles", "_kpis", "_standouts", "_charts", "_csv_columns",
}

_PILL_COLUMNS = {"InactivityStatus"}

_STATUS_TONES = {
    "high priority cleanup": "crit",
    "cleanup candidate": "warn",
    "never logged in": "warn",
    "review recommended": "soon",
    "monitor": "soon",
    "ok": "ok",
}


# ---------- small helpers ----------

def _esc(v: Any) -> str:
    return "" if v is None else html.escape(str(v))

def _slug(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", str(name).lower()).strip("-")

def _fmt_cell(val: Any) -> str:
    if isinstance(val, Decimal):
        return f"{val:.2f}"
    if isinstance(val, (list, tuple)):
        return "; ".join(str(v) for v in val)
    return "" if val is None else str(val)

def _humanise(key: str) -> str:
    """'sku_summary' -> 'Sku Summary', 'UnitsConsumed' -> 'Units Consumed'."""
    words = re.sub(r"(?<=[a-z0-9])(?=[A-Z])", " ", key.replace("_", " "))
    return " ".join(w[:1].upper() + w[1:] for w in words.split()) or key

def _section_title(key: str, titles: Optional[Dict[str, str]] = None) -> str:
    return (titles or {}).get(key) or _humanise(key)

def _json_default(val: Any) -> Any:
    if isinstance(val, Decimal):
        return float(val)
    return str(val)

def _script_json(obj: Any) -> str:
    # safe to drop inside a <script> block
    return json.dumps(obj, default=_json_default, ensure_ascii=False).replace("</", "<\\/")

def _status_tone(status: Any) -> str:
    return _STATUS_TONES.get(str(status or "").strip().lower(), "unknown")

def _sort_attr(val: Any) -> str:
    """Numbers carry a data-sort value so the browser orders them numerically."""
    if isinstance(val, (int, float, Decimal)) and not isinstance(val, bool):
        return f' data-sort="{_esc(val)}"'
    return ""


# ---------- stylesheet ----------

_CSS_PAGE = """
:root{
  --accent:#4fb3ff; --accent2:#1f7ae0;
  --ink:#1b2330; --paper:#f5f7fb; --panel:#ffffff; --rule:#e3e8ef; --quiet:#667085;
  --ok:#10b981; --warn:#f59e0b; --crit:#ef4444; --soon:#60a5fa; --none:#94a3b8;
}
@media (prefers-color-scheme: dark){
  :root{ --ink:#e7edf7; --paper:#0e1217; --panel:#1b212a; --rule:#2a3340; --quiet:#9fb2cc; }
}
*{box-sizing:border-box}
body{margin:0;font:15px/1.5 "Segoe UI",Roboto,Arial,system-ui;background:var(--paper);color:var(--ink)}
.masthead{background:linear-gradient(90deg,var(--accent2),var(--accent));color:#fff;
  padding:20px 28px;box-shadow:0 4px 14px rgba(0,0,0,.25)}
.masthead h1{margin:0;font-size:1.8rem;font-weight:800}
.masthead h2{margin:4px 0 0 0;font-weight:500}
.masthead .sub, .masthead .stamp{margin:2px 0 0 0;font-size:.9rem;opacity:.85}
.container{width:95%;max-width:1900px;margin:24px auto;padding:22px 26px;background:var(--panel);
  border:1px solid var(--rule);border-radius:12px;box-shadow:0 10px 30px rgba(0,0,0,.18)}
h3{margin:16px 0 8px 0;padding-bottom:6px;color:var(--accent);border-bottom:2px solid var(--accent)}
.section{margin:18px 0}
.section h4{margin:0 0 8px 0;font-size:1.05rem}
.scroll-x{overflow-x:auto}
.colophon{margin:26px auto 12px auto;text-align:center;color:var(--quiet);font-size:.9rem}
"""

_CSS_TABLES = """
table{width:100%;border-collapse:separate;border-spacing:0;margin-top:8px;
  border:1px solid var(--rule);border-radius:10px;overflow:hidden}
th,td{padding:9px 12px;border-bottom:1px solid var(--rule);text-align:left;overflow-wrap:anywhere}
th{white-space:nowrap;background:var(--accent2);color:#fff;font-weight:700}
tbody tr:nth-child(even) td{background:color-mix(in srgb,var(--panel) 88%, #000 12%)}
table.sortable th{cursor:pointer;user-select:none}
table.sortable th[aria-sort="ascending"]::after{content:" \\25B2";font-size:.7rem}
table.sortable th[aria-sort="descending"]::after{content:" \\25BC";font-size:.7rem}
table.summary{width:min(760px,100%)}
table.summary th{width:40%}
td.col-status, th.col-status{text-align:center;width:150px}
.pill{display:inline-block;padding:2px 10px;border-radius:999px;font-weight:700;white-space:nowrap;
  color:var(--tone,var(--none));background:color-mix(in srgb,var(--tone,var(--none)) 16%, transparent)}
.pill.xs{padding:1px 7px;font-size:.8rem}
.pill.ok{--tone:var(--ok)} .pill.warn{--tone:var(--warn)} .pill.crit{--tone:var(--crit)}
.pill.soon{--tone:var(--soon)} .pill.unknown{--tone:var(--none)}
"""

_CSS_DASHBOARD = """
.tiles{display:grid;gap:12px;grid-template-columns:repeat(auto-fit,minmax(220px,1fr))}
.tiles.wide{grid-template-columns:repeat(auto-fit,minmax(260px,1fr));margin-top:12px}
.tile{padding:14px 16px;border:1px solid var(--rule);border-radius:12px;box-shadow:0 6px 18px rgba(0,0,0,.08)}
.tile .caption{display:flex;justify-content:space-between;align-items:center;color:var(--quiet);font-weight:600}
.tile .figure{font-size:1.8rem;font-weight:800;margin-top:4px}
.tile .note{color:var(--quiet);font-size:.9rem}
.tile .lead{display:flex;justify-content:space-between;align-items:center;gap:8px}
.tile .lead b{display:block}
.tile .score{font-size:1.4rem;font-weight:800;color:var(--crit)}
.tag{border-radius:999px;padding:3px 10px;font-size:.8rem;font-weight:700;color:#fff;background:var(--accent2)}
.tag.success{background:var(--ok)} .tag.warning{background:var(--warn);color:#111}
.tag.danger{background:var(--crit)} .tag.info{background:#0ea5e9} .tag.secondary{background:#6b7280}
.charts{display:grid;grid-template-columns:1fr 1fr;gap:12px;margin-top:12px}
@media (max-width:1000px){ .charts{grid-template-columns:1fr} }
"""

_CSS_TABS = """
.tabbar{display:flex;flex-wrap:wrap;gap:8px;width:95%;max-width:1900px;margin:24px auto 0 auto}
.tabbar button{padding:8px 14px;border-radius:999px;border:1px solid var(--rule);cursor:pointer;
  font-weight:600;background:var(--panel);color:var(--ink)}
.tabbar button.active{background:var(--accent2);color:#fff;border-color:transparent}
.tabpanel{display:none}
.tabpanel.active{display:block}
"""

# click a header to sort; a column sorts numerically when every cell has a number
SORT_JS = r"""
(function(){
  const collator = new Intl.Collator(undefined, {numeric: true, sensitivity: 'base'});
  const keyOf = td => td ? (td.dataset.sort ?? td.textContent.trim()) : '';
  const isNum = v => v === '' || isFinite(Number(v));
  for (const table of document.querySelectorAll('table.sortable')) {
    const heads = [...table.tHead.rows[0].cells];
    heads.forEach((th, col) => th.addEventListener('click', () => {
      const asc = th.getAttribute('aria-sort') !== 'ascending';
      heads.forEach(h => h.removeAttribute('aria-sort'));
      th.setAttribute('aria-sort', asc ? 'ascending' : 'descending');
      const body = table.tBodies[0];
      const keyed = [...body.rows].map(row => [keyOf(row.cells[col]), row]);
      const numeric = keyed.every(([k]) => isNum(k));
      keyed.sort(([a], [b]) => {
        const cmp = numeric ? (Number(a) || 0) - (Number(b) || 0) : collator.compare(a, b);
        return asc ? cmp : -cmp;
      });
      body.append(...keyed.map(([, row]) => row));
    }));
  }
})();
"""

TABS_JS = r"""
(function(){
  const bar = document.querySelector('.tabbar');
  if (!bar) return;
  const show = id => {
    for (const b of bar.querySelectorAll('button')) b.classList.toggle('active', b.dataset.tab === id);
    for (const p of document.querySelectorAll('.tabpanel')) p.classList.toggle('active', p.id === id);
  };
  bar.addEventListener('click', e => {
    const id = e.target.dataset && e.target.dataset.tab;
    if (id) { show(id); history.replaceState(null, '', '#' + id); }
  });
  const wanted = location.hash.slice(1);
  if (wanted && document.getElementById(wanted)) show(wanted);
})();
"""

def _page_css(with_tabs: bool = False) -> str:
    return _CSS_PAGE + _CSS_TABLES + _CSS_DASHBOARD + (_CSS_TABS if with_tabs else "")


# ---------- page frame ----------

def _masthead(title: str, subtitle: Optional[str] = None) -> str:
    stamp = datetime.datetime.now(datetime.timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")
    sub = f'<p class="sub">{_esc(subtitle)}</p>' if subtitle else ""
    return (
        '<header class="masthead">'
        '<h1>🐩 LicencePoodle</h1>'
        f'<h2>{_esc(title)}</h2>{sub}'
        f'<p class="stamp">Generated {_esc(stamp)}</p>'
        '</header>'
    )

def _colophon() -> str:
    year = datetime.datetime.now(datetime.timezone.utc).year
    return (f'<footer class="colophon">LicencePoodle 🐩 licence review for Microsoft 365 '
            f'&middot; &copy; {year}</footer>')

def _page(title: str, css: str, body: str, head_scripts: str = "", tail_scripts: str = "") -> str:
    return f"""<!DOCTYPE html>
<html lang="en"><head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>{_esc(title)}</title>
<style>{css}</style>
{head_scripts}
</head><body>
{body}
{_colophon()}
{tail_scripts}
<script>{SORT_JS}</script>
</body></html>"""


# ---------- dashboard ----------

def _kpi_tile(kpi: Dict[str, Any]) -> str:
    tone = str(kpi.get("tone") or "primary")
    tag = kpi.get("badge") or tone.title()
    note = kpi.get("delta")
    return (
        '<div class="tile">'
        f'<div class="caption"><span>{_esc(kpi.get("label", ""))}</span>'
        f'<span class="tag {_esc(tone)}">{_esc(tag)}</span></div>'
        f'<div class="figure">{_esc(_fmt_cell(kpi.get("value", "")))}</div>'
        + (f'<div class="note">{_esc(note)}</div>' if note else "")
        + '</div>'
    )

def _standout_tile(key: str, item: Dict[str, Any]) -> str:
    heading = f'<div class="caption">⭐ {_esc(item.get("title") or _humanise(key))}</div>'
    if not item.get("name"):
        return f'<div class="tile">{heading}<div class="note">No data</div></div>'
    return (
        f'<div class="tile">{heading}<div class="lead">'
        f'<div><b>{_esc(item["name"])}</b><span class="note">{_esc(item.get("comment", ""))}</span></div>'
        f'<div class="score">{_esc(_fmt_cell(item.get("score", "")))}</div>'
        '</div></div>'
    )

def _chart_blocks(charts: Optional[Dict[str, Any]], prefix: str) -> Tuple[str, str]:
    """
    Canvas markup plus the script that draws it. Each chart is
    {"type": "doughnut"|"bar", "title": str, "labels": [...], "data": [...]}.
    Charts without labels are left out.
    """
    canvases, configs = [], {}
    for key, chart in (charts or {}).items():
        if not isinstance(chart, dict) or not chart.get("labels"):
            continue
        cid = f"{prefix}-chart-{_slug(key)}"
        kind = chart.get("type") or "doughnut"
        title = chart.get("title") or _humanise(key)
        canvases.append(f'<div class="tile"><div class="caption">{_esc(title)}</div>'
                        f'<canvas id="{cid}" height="220"></canvas></div>')
        configs[cid] = {
            "type": kind,
            "data": {"labels": chart["labels"],
                     "datasets": [{"label": chart.get("label") or title, "data": chart.get("data", [])}]},
            "options": {"plugins": {"legend": {"display": False} if kind == "bar" else {"position": "bottom"}}},
        }
    if not canvases:
        return "", ""
    script = (f"for (const [id, cfg] of Object.entries({_script_json(configs)})) "
              "{ new Chart(document.getElementById(id), cfg); }")
    return f'<div class="charts">{"".join(canvases)}</div>', script

def _dashboard(data: Dict[str, Any], prefix: str) -> Tuple[str, str]:
    parts = []
    kpis = data.get("_kpis") or []
    if kpis:
        parts.append(f'<div class="tiles">{"".join(_kpi_tile(k) for k in kpis)}</div>')
    standouts = data.get("_standouts") or {}
    if standouts:
        parts.append(f'<div class="tiles wide">{"".join(_standout_tile(k, v) for k, v in standouts.items())}</div>')
    charts_html, charts_js = _chart_blocks(data.get("_charts"), prefix)
    parts.append(charts_html)
    return "\n".join(p for p in parts if p), charts_js


# ---------- tables ----------

def _cell(column: str, val: Any) -> str:
    if column in _PILL_COLUMNS:
        return f"<td class='col-status'><span class='pill xs {_status_tone(val)}'>{_esc(val)}</span></td>"
    if column == "DuplicateLicences" and val and val != "N/A":
        return f"<td><span class='pill xs warn'>{_esc(val)}</span></td>"
    return f"<td{_sort_attr(val)}>{_esc(_fmt_cell(val))}</td>"

def _render_table(rows: List[Dict[str, Any]], title: str) -> str:
    if not rows:
        return f"<div class='section'><h4>{_esc(title)}</h4><p>No data.</p></div>"
    cols = list(dict.fromkeys(k for r in rows for k in r))
    head = "".join(
        f"<th class='col-status'>{_esc(c)}</th>" if c in _PILL_COLUMNS else f"<th>{_esc(c)}</th>"
        for c in cols
    )
    body = "".join("<tr>" + "".join(_cell(c, r.get(c, "")) for c in cols) + "</tr>" for r in rows)
    return (
        f"<div class='section'><h4>{_esc(title)}</h4><div class='scroll-x'>"
        f"<table id=\"tbl-{_slug(title)}\" class=\"sortable\">"
        f"<thead><tr>{head}</tr></thead><tbody>{body}</tbody></table></div></div>"
    )

def _summary_table(summary: Dict[str, Any]) -> str:
    if not summary:
        return "<p>No summary data available.</p>"
    rows = "".join(f"<tr><th>{_esc(k)}</th><td>{_esc(_fmt_cell(v))}</td></tr>" for k, v in summary.items())
    return f"<table class='summary'>{rows}</table>"

def _module_container(module_name: str, data: Dict[str, Any]) -> Tuple[str, str, bool]:
    """(container_html, scripts_html, needs_chartjs) for one module's result."""
    dash_html, charts_js = _dashboard(data, _slug(module_name))
    titles = data.get("_section_titles") or {}
    tables = [
        _render_table(v, _section_title(k, titles))
        for k, v in data.items()
        if k not in _RESERVED_KEYS and isinstance(v, list) and v and isinstance(v[0], dict)
    ]
    extra_css = data.get("_inline_css") if isinstance(data.get("_inline_css"), str) else ""
    extra_js = data.get("_inline_js") if isinstance(data.get("_inline_js"), str) else ""
    container_class = " ".join(filter(None, ["container", data.get("_container_class")]))

    body = (
        (f"<style>{extra_css}</style>" if extra_css else "")
        + f'<div class="{_esc(container_class)}">{dash_html}'
        + f"<h3>Summary</h3>{_summary_table(data.get('summary') or {})}"
        + "\n".join(tables) + "</div>"
    )
    scripts = "\n".join(f"<script>{js}</script>" for js in (charts_js, extra_js) if js)
    return body, scripts, bool(charts_js)


def _write_html(filename: str, html_doc: str) -> None:
    os.makedirs(os.path.dirname(filename) or ".", exist_ok=True)
    with open(filename, "w", encoding="utf-8") as f:
        f.write(html_doc)
    fncPrintMessage(f"HTML report written to {filename}", "success")


# ================================================================
# Single-module report
# ================================================================
def fncWriteHTMLReport(filename: str, module_name: str, data_dict: Dict[str, Any]) -> None:
    fncPrintMessage(f"Generating HTML report: {filename}", "info")
    data_dict = data_dict or {}

    body, scripts, needs_chartjs = _module_container(module_name, data_dict)
    masthead = _masthead(data_dict.get("_title") or _humanise(module_name), data_dict.get("_subtitle"))

    # Chart.js has to be loaded before the chart script runs
    tail = "\n".join(filter(None, [CHARTJS_TAG if needs_chartjs else "", scripts]))
    _write_html(filename, _page(f"LicencePoodle - {module_name}", _page_css(), masthead + body,
                                tail_scripts=tail))


# ================================================================
# Multi-module report
# ================================================================
def fncWriteHTMLReportMulti(filename: str, modules: Dict[str, Dict[str, Any]]) -> None:
    fncPrintMessage(f"Generating multi-module HTML report: {filename}", "info")

    buttons, panels, any_charts = [], [], False
    for mod_name, data in modules.items():
        if not isinstance(data, dict):
            continue
        sid = _slug(mod_name)
        active = "active" if not panels else ""
        body, scripts, needs_chartjs = _module_container(mod_name, data)
        any_charts = any_charts or needs_chartjs
        buttons.append(f'<button class="{active}" data-tab="{sid}">'
                       f'{_esc(data.get("_title") or _humanise(mod_name))}</button>')
        panels.append(f'<section id="{sid}" class="tabpanel {active}">{body}\n{scripts}</section>')

    body = (
        _masthead("Licence Review", "SKU reference and licence report")
        + f'<nav class="tabbar">{"".join(buttons)}</nav>'
        + "".join(panels)
    )
    _write_html(filename, _page("LicencePoodle - Licence Review", _page_css(with_tabs=True), body,
                                head_scripts=CHARTJS_TAG if any_charts else "",
                                tail_scripts=f"<script>{TABS_JS}</script>"))
