# scrnaseq_integrate/data/__init__.py
