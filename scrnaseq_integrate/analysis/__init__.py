# scrnaseq_integrate/analysis/__init__.py
