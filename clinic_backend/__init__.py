"""
Backend registrazione account (piattaforma medica multi-organizzazione).

Struttura:
- config.py        : Settings da variabili d'ambiente (.env)
- db.py            : engine e sessioni SQLAlchemy
- models.py        : modelli ORM e enum
- datastore.py     : accesso ai dati per nome tabella (insert/update/delete/query)
- identity.py      : provider identità (locale o servizio auth ospitato)
- registration.py  : registrazione (risoluzione ruoli, provisioning, saga, task non critici)
- saga.py          : esecuzione passi con compensazione in ordine inverso
- history.py       : spostamento storico dal profilo non registrato
- invites.py       : registrazione da invito
- api_main.py      : API FastAPI
- cli.py           : comandi amministrativi via CLI
"""
