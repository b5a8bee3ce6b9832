"""
Document lifecycle module.

- Documents live in a case file and move through borrador -> pendiente ->
  aprobado -> activo -> archivado; any state except obsoleto can go to obsoleto
- Content is versioned ("1.0", "1.1", ...); versions are append-only and never
  rewritten
- Bulk upload creates one document per file and reports each file separately
"""
