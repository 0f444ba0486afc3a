"""
Report Renderer

Renders snapshot, compliance, remediation and before/after comparison data
into HTML tables, JSON, CSV and Excel workbooks. Every report carries the same
metadata (script, invocation, mode, timestamp, run ID): as a footer in HTML
and CSV, as a ``metadata`` block in JSON and as a sheet in Excel.
"""

import json
from html import escape
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import pandas as pd
from openpyxl import Workbook
from openpyxl.styles import Alignment, Border, Font, PatternFill, Side
from openpyxl.utils import get_column_letter

from .artifacts import RunContext
from .rules import SEVERITIES
from .settings import APPLICATION_NAME, APPLICATION_VERSION, REPORTS_SUBDIR

DEFAULT_FORMATS = ('html', 'json', 'csv')
ALL_FORMATS = ('html', 'json', 'csv', 'xlsx')

SEVERITY_COLORS = {
    'CRITICAL': "C00000",
    'HIGH': "FF6600",
    'MEDIUM': "FFC000",
    'LOW': "92D050",
}

HTML_STYLE = """
body { font-family: Segoe UI, Helvetica, Arial, sans-serif; margin: 24px; color: #1f2937; }
h1 { color: #1F4788; }
h2 { border-bottom: 2px solid #1F4788; padding-bottom: 4px; margin-top: 32px; }
table { border-collapse: collapse; margin: 12px 0; width: 100%; }
th { background: #1F4788; color: #ffffff; text-align: left; padding: 6px 8px; }
td { border: 1px solid #d1d5db; padding: 4px 8px; vertical-align: top; }
tr:nth-child(even) td { background: #f3f4f6; }
.summary td:first-child { font-weight: bold; width: 260px; }
.sev-CRITICAL { color: #C00000; font-weight: bold; }
.sev-HIGH { color: #FF6600; font-weight: bold; }
.sev-MEDIUM { color: #b7791f; }
.sev-LOW { color: #4d7c0f; }
.warning { background: #fff7ed; border-left: 4px solid #FF6600; padding: 8px 12px; }
footer { margin-top: 40px; font-size: 12px; color: #6b7280; border-top: 1px solid #d1d5db; padding-top: 8px; }
"""


def _cell(value: Any) -> str:
    if value is None:
        return ''
    if isinstance(value, bool):
        return 'Yes' if value else 'No'
    if isinstance(value, (list, dict)):
        return json.dumps(value, default=str)
    return str(value)


def render_table(columns: Sequence[str], rows: List[Sequence[Any]], css_class: str = '') -> str:
    head = "".join(f"<th>{escape(c)}</th>" for c in columns)
    body = []
    for row in rows:
        cells = []
        for value in row:
            text = escape(_cell(value))
            if isinstance(value, str) and value in SEVERITY_COLORS:
                cells.append(f'<td class="sev-{value}">{text}</td>')
            else:
                cells.append(f"<td>{text}</td>")
        body.append(f"<tr>{''.join(cells)}</tr>")
    if not body:
        body.append(f'<tr><td colspan="{len(columns)}">No entries</td></tr>')
    class_attr = f' class="{css_class}"' if css_class else ''
    return f"<table{class_attr}><thead><tr>{head}</tr></thead><tbody>{''.join(body)}</tbody></table>"


def render_footer(metadata: Dict[str, str]) -> str:
    return (
        "<footer>"
        f"Generated by {escape(APPLICATION_NAME)} {escape(APPLICATION_VERSION)}<br>"
        f"Script: {escape(metadata['script'])} | Mode: {escape(metadata['mode'])} | "
        f"Run ID: {escape(metadata['run_id'])} | Timestamp: {escape(metadata['timestamp'])}<br>"
        f"Command: <code>{escape(metadata['invocation'])}</code>"
        "</footer>"
    )


def render_html(title: str, summary: List[Sequence[Any]], tables: List[Dict[str, Any]],
                metadata: Dict[str, str], warnings: Optional[List[str]] = None) -> str:
    """
    Build a standalone HTML document.

    Args:
        title: Page heading
        summary: (label, value) pairs shown in the summary table
        tables: Dicts with 'title', 'columns' and 'rows'
        metadata: Run metadata for the footer
        warnings: Messages highlighted above the tables
    """
    parts = [
        "<!DOCTYPE html>",
        '<html lang="en"><head><meta charset="utf-8">',
        f"<title>{escape(title)}</title>",
        f"<style>{HTML_STYLE}</style></head><body>",
        f"<h1>{escape(title)}</h1>",
    ]
    for warning in warnings or []:
        parts.append(f'<p class="warning">⚠ {escape(warning)}</p>')
    parts.append("<h2>Summary</h2>")
    parts.append(render_table(["Metric", "Value"], summary, css_class="summary"))
    for table in tables:
        parts.append(f"<h2>{escape(table['title'])}</h2>")
        parts.append(render_table(table['columns'], table['rows']))
    parts.append(render_footer(metadata))
    parts.append("</body></html>")
    return "\n".join(parts)


def snapshot_tables(snapshot: Dict[str, Any]) -> List[Dict[str, Any]]:
    vault_rows, violation_rows, object_rows = [], [], []

    for vault in snapshot.get('vaults', []):
        security = vault.get('security', {})
        vault_rows.append([
            vault['name'], vault.get('profile'), vault.get('expected'),
            security.get('soft_delete_enabled'), security.get('soft_delete_retention_days'),
            security.get('purge_protection_enabled'), security.get('rbac_authorization_enabled'),
            security.get('public_network_access'), security.get('network_default_action'),
            vault.get('diagnostics', {}).get('enabled'),
            len(vault.get('violations', [])),
        ])
        for violation in vault.get('violations', []):
            violation_rows.append([
                violation['severity'], vault['name'], violation.get('object_name'),
                violation['rule_id'], violation['description'], violation.get('policy_id'),
                violation.get('remediation'),
            ])
        objects = vault.get('objects') or {}
        for kind in ('secrets', 'keys', 'certificates'):
            for item in objects.get(kind, []):
                object_rows.append([
                    vault['name'], kind[:-1], item['name'], item.get('enabled'),
                    item.get('expires_on'), item.get('days_to_expiry'),
                ])

    severity_order = {s: i for i, s in enumerate(SEVERITIES)}
    violation_rows.sort(key=lambda row: (severity_order.get(row[0], len(SEVERITIES)), row[1]))

    return [
        {
            'title': 'Vaults',
            'columns': ['Vault', 'Profile', 'Expected', 'Soft Delete', 'Retention (days)',
                        'Purge Protection', 'RBAC', 'Public Access', 'Firewall Default',
                        'Diagnostics', 'Violations'],
            'rows': vault_rows,
        },
        {
            'title': 'Violations',
            'columns': ['Severity', 'Vault', 'Object', 'Rule', 'Description', 'Policy', 'Remediation'],
            'rows': violation_rows,
        },
        {
            'title': 'Objects',
            'columns': ['Vault', 'Type', 'Name', 'Enabled', 'Expires', 'Days to Expiry'],
            'rows': object_rows,
        },
    ]


def snapshot_summary(snapshot: Dict[str, Any]) -> List[Sequence[Any]]:
    summary = snapshot.get('violation_summary', {})
    rows = [
        ('Label', snapshot.get('label')),
        ('Captured', snapshot.get('timestamp')),
        ('Resource Group', snapshot.get('resource_group')),
        ('Vaults', summary.get('total_vaults')),
        ('Compliant Vaults', summary.get('compliant_vaults')),
        ('Non-compliant Vaults', summary.get('non_compliant_vaults')),
        ('Total Violations', summary.get('total_violations')),
    ]
    for severity in SEVERITIES:
        rows.append((f"  {severity}", summary.get('by_severity', {}).get(severity, 0)))
    return rows


def compliance_tables(result: Dict[str, Any]) -> List[Dict[str, Any]]:
    summary = result.get('summary', {})
    policy_rows = [
        [info['display_name'], policy_id, info.get('effect'), info['compliant'],
         info['non_compliant'], info['other']]
        for policy_id, info in sorted(summary.get('by_policy', {}).items(),
                                      key=lambda kv: kv[1]['display_name'] or '')
    ]
    vault_rows = [
        [vault, info['compliant'], info['non_compliant'], info['other']]
        for vault, info in sorted(summary.get('by_vault', {}).items())
    ]
    state_rows = [
        [s['vault'], s['policy_display_name'], s['effect'], s['compliance_state'],
         s['resource_type'], s['timestamp']]
        for s in result.get('states', [])
    ]
    return [
        {'title': 'Policy States', 'columns': ['Vault', 'Policy', 'Effect', 'State', 'Resource Type', 'Evaluated'],
         'rows': state_rows},
        {'title': 'By Policy', 'columns': ['Policy', 'Definition', 'Effect', 'Compliant', 'Non-compliant', 'Other'],
         'rows': policy_rows},
        {'title': 'By Vault', 'columns': ['Vault', 'Compliant', 'Non-compliant', 'Other'],
         'rows': vault_rows},
    ]


def remediation_tables(result: Dict[str, Any]) -> List[Dict[str, Any]]:
    executed = {(r['vault'], r['action'], r.get('object_name')): r for r in result.get('results', [])}
    rows = []
    for item in result.get('plan', []):
        outcome = executed.get((item['vault'], item['action'], item.get('object_name')))
        if outcome is None:
            status, message = ('not applied', '')
        else:
            status, message = ('success' if outcome['success'] else 'failed', outcome['message'])
        rows.append([item['vault'], item.get('object_name'), item['action'], item['category'],
                     item.get('severity'), status, message or item['reason']])
    return [{
        'title': 'Remediation Actions',
        'columns': ['Vault', 'Object', 'Action', 'Category', 'Severity', 'Status', 'Detail'],
        'rows': rows,
    }]


def comparison_tables(diff: Dict[str, Any]) -> List[Dict[str, Any]]:
    severity_rows = [
        [severity, diff['before_summary']['by_severity'].get(severity, 0),
         diff['after_summary']['by_severity'].get(severity, 0),
         diff['summary_delta']['by_severity'].get(severity, 0)]
        for severity in SEVERITIES
    ]
    change_rows = []
    for change in diff.get('vault_changes', []):
        for field in change['field_changes']:
            change_rows.append([change['vault'], 'setting', field['field'], field['before'], field['after']])
        for item in change['violations_resolved']:
            change_rows.append([change['vault'], 'resolved', item['rule_id'], item.get('object_name'), ''])
        for item in change['violations_introduced']:
            change_rows.append([change['vault'], 'introduced', item['rule_id'], '', item.get('object_name')])
    return [
        {'title': 'Violations by Severity', 'columns': ['Severity', 'Before', 'After', 'Delta'],
         'rows': severity_rows},
        {'title': 'Vault Changes', 'columns': ['Vault', 'Change', 'Field / Rule', 'Before', 'After'],
         'rows': change_rows},
    ]


class ReportRenderer:
    """Writes reports for one run under ``artifacts/<run_id>/reports``."""

    def __init__(self, context: RunContext, formats: Sequence[str] = DEFAULT_FORMATS):
        unknown = [f for f in formats if f not in ALL_FORMATS]
        if unknown:
            raise ValueError(f"Unknown report format(s): {', '.join(unknown)}")
        self.context = context
        self.formats = tuple(formats)

    def render_snapshot(self, snapshot: Dict[str, Any]) -> Dict[str, str]:
        return self.write_report(
            f"snapshot-{snapshot.get('label', 'state')}",
            f"Key Vault State Snapshot: {snapshot.get('label', '')}",
            snapshot_summary(snapshot), snapshot_tables(snapshot), snapshot
        )

    def render_compliance(self, result: Dict[str, Any]) -> Dict[str, str]:
        summary = result.get('summary', {})
        rows = [
            ('Status', result.get('status')),
            ('Attempts', result.get('attempts')),
            ('Policy States', summary.get('total_states')),
            ('Compliant', summary.get('compliant')),
            ('Non-compliant', summary.get('non_compliant')),
            ('Compliance %', f"{summary.get('compliance_percentage', 0.0):.1f}%"),
        ]
        warnings = [f"Azure Policy returned {result['message']}."] if result.get('message') else []
        return self.write_report("compliance", "Azure Policy Compliance (Key Vault)",
                                 rows, compliance_tables(result), result, warnings)

    def render_remediation(self, result: Dict[str, Any]) -> Dict[str, str]:
        plan = result.get('plan', [])
        rows = [
            ('Mode', result.get('mode')),
            ('Status', result.get('status')),
            ('Planned Actions', len(plan)),
            ('Safe', sum(1 for p in plan if p['category'] == 'safe')),
            ('Manual Review', sum(1 for p in plan if p['category'] == 'manual')),
            ('Applied Successfully', sum(1 for r in result.get('results', []) if r['success'])),
        ]
        return self.write_report("remediation", "Key Vault Remediation", rows,
                                 remediation_tables(result), result)

    def render_comparison(self, diff: Dict[str, Any]) -> Dict[str, str]:
        before, after = diff['before_summary'], diff['after_summary']
        rows = [
            ('Before', f"{diff.get('before_label')} ({diff.get('before_timestamp')})"),
            ('After', f"{diff.get('after_label')} ({diff.get('after_timestamp')})"),
            ('Violations', f"{before['total_violations']} → {after['total_violations']}"),
            ('Non-compliant Vaults', f"{before['non_compliant_vaults']} → {after['non_compliant_vaults']}"),
            ('Vaults Added', ", ".join(diff.get('vaults_added', [])) or '-'),
            ('Vaults Removed', ", ".join(diff.get('vaults_removed', [])) or '-'),
        ]
        warnings = []
        if diff.get('regressed'):
            warnings.append(
                "The after snapshot shows more violations than the baseline. Azure policy "
                "evaluation may not have converged yet; re-run the comparison later."
            )
        return self.write_report("comparison", "Before / After Comparison", rows,
                                 comparison_tables(diff), diff, warnings)

    def write_report(self, kind: str, title: str, summary: List[Sequence[Any]],
                     tables: List[Dict[str, Any]], data: Any,
                     warnings: Optional[List[str]] = None) -> Dict[str, str]:
        """
        Write one report in every configured format.

        CSV output holds the first table followed by the run metadata as
        ``# key,value`` rows; the JSON output holds the raw data.

        Returns:
            Mapping of format to written file path
        """
        metadata = self.context.metadata()
        written = {}

        if 'html' in self.formats:
            path = self.context.artifact_path(REPORTS_SUBDIR, kind, 'html')
            path.write_text(render_html(title, summary, tables, metadata, warnings), encoding='utf-8')
            written['html'] = str(path)

        if 'json' in self.formats:
            path = self.context.artifact_path(REPORTS_SUBDIR, kind, 'json')
            with open(path, 'w', encoding='utf-8') as f:
                json.dump({'metadata': metadata, 'title': title, 'data': data}, f, indent=2, default=str)
            written['json'] = str(path)

        if 'csv' in self.formats and tables:
            path = self.context.artifact_path(REPORTS_SUBDIR, kind, 'csv')
            frame = pd.DataFrame([[_cell(v) for v in row] for row in tables[0]['rows']],
                                 columns=tables[0]['columns'])
            frame.to_csv(path, index=False, encoding='utf-8')
            footer = pd.DataFrame([[f"# {key}", value] for key, value in metadata.items()])
            footer.to_csv(path, mode='a', index=False, header=False, encoding='utf-8')
            written['csv'] = str(path)

        if 'xlsx' in self.formats:
            path = self.context.artifact_path(REPORTS_SUBDIR, kind, 'xlsx')
            self._write_workbook(path, title, summary, tables, metadata)
            written['xlsx'] = str(path)

        for fmt, path in written.items():
            print(f"  ✓ {fmt.upper()} report: {path}")
        self.context.log_event("REPORT_WRITTEN", {'kind': kind, 'files': written})
        return written

    def _write_workbook(self, path: Path, title: str, summary: List[Sequence[Any]],
                        tables: List[Dict[str, Any]], metadata: Dict[str, str]) -> None:
        wb = Workbook()
        wb.remove(wb.active)

        header_fill = PatternFill(start_color="1F4788", end_color="1F4788", fill_type="solid")
        white_font = Font(color="FFFFFF", bold=True)
        border = Border(left=Side(style='thin'), right=Side(style='thin'),
                        top=Side(style='thin'), bottom=Side(style='thin'))

        ws = wb.create_sheet("Summary")
        ws['A1'] = title
        ws['A1'].font = Font(bold=True, size=16)
        ws.merge_cells('A1:B1')
        for row, (label, value) in enumerate(summary, 3):
            ws.cell(row=row, column=1, value=label).font = Font(bold=True)
            ws.cell(row=row, column=2, value=_cell(value))
        ws.column_dimensions['A'].width = 28
        ws.column_dimensions['B'].width = 50

        for table in tables:
            sheet = wb.create_sheet(table['title'][:31])
            for col, header in enumerate(table['columns'], 1):
                cell = sheet.cell(row=1, column=col, value=header)
                cell.fill = header_fill
                cell.font = white_font
                cell.alignment = Alignment(horizontal='center', wrap_text=True)
                cell.border = border
            for row_num, row in enumerate(table['rows'], 2):
                for col, value in enumerate(row, 1):
                    cell = sheet.cell(row=row_num, column=col, value=_cell(value))
                    cell.border = border
                    cell.alignment = Alignment(wrap_text=True, vertical='top')
                    if isinstance(value, str) and value in SEVERITY_COLORS:
                        color = SEVERITY_COLORS[value]
                        cell.fill = PatternFill(start_color=color, end_color=color, fill_type="solid")
                        cell.font = Font(color="FFFFFF", bold=True)
            for col in range(1, len(table['columns']) + 1):
                sheet.column_dimensions[get_column_letter(col)].width = 22
            sheet.freeze_panes = 'A2'

        meta = wb.create_sheet("Metadata")
        for row, (key, value) in enumerate(metadata.items(), 1):
            meta.cell(row=row, column=1, value=key).font = Font(bold=True)
            meta.cell(row=row, column=2, value=value)
        meta.column_dimensions['A'].width = 14
        meta.column_dimensions['B'].width = 80

        wb.save(path)
