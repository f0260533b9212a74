import os
import tempfile

# Va eseguito prima di importare clinic_emr: config legge l'ambiente all'import
_DB_DIR = tempfile.mkdtemp(prefix="clinic_emr_tests_")
os.environ["CLINIC_DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.sqlite')}"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["AI_GATEWAY_API_KEY"] = "test-key"
os.environ.setdefault("TICKET_TOKEN_PREFIX", "Q")
