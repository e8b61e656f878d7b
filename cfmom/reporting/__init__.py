from cfmom.reporting.audit import render_audit, result_to_json

__all__ = ["render_audit", "result_to_json"]
