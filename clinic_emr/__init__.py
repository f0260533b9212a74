"""
Backend applicativo Clinic EMR.

Struttura:
- config.py          : configurazione da env (.env) e logging
- db.py              : engine e sessioni SQLAlchemy
- models.py          : modelli ORM e enum
- pricing.py         : aritmetica fatture e coupon (pura)
- queue_service.py   : code triage/medico, token, passaggio triage -> medico
- billing_service.py : fatture, coupon, pagamenti, rimborsi
- services.py        : pazienti, registrazione, appuntamenti, listino
- clinical.py        : note EMR e allergie
- notifications.py   : template e invio notifiche
- ai_access.py       : quote e permessi AI per utente
- ai_gateway.py      : client gateway AI e analisi clinica
- consultations.py   : teleconsulto e riassunto AI
- seed.py            : dati iniziali (code, servizi, pacchetti)
- cli.py             : front desk e dispatcher notifiche via CLI
- api_main.py        : API FastAPI
"""
