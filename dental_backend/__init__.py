"""
Dental practice management backend (multi-tenant).

Structure:
- config.py          : settings from the environment / .env
- db.py              : SQLAlchemy engine and sessions
- auth_models.py     : organizations, users, roles
- models.py          : clinical and financial ORM models
- scope.py           : tenant scoping of queries
- auth_*.py          : passwords, JWT, registration and login
- services.py        : patients, agenda, catalog, inventory, lab cases, settings
- billing.py         : invoices, payments, plans, adjustments, expenses, claims, audit
- reports.py         : revenue, AR aging, production, expenses, net profit
- notifications.py   : in-app notifications and preferences
- platform_admin.py  : super admin organization management
- api_main.py        : FastAPI application
- seed.py / cli.py   : base data and command line administration
"""
