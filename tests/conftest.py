import base64
import json
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["ENVIRONMENT"] = "test"
os.environ["LEADOS_SECRETS_KEY"] = base64.b64encode(b"k" * 32).decode("ascii")

from types import SimpleNamespace  # noqa: E402
from unittest.mock import Mock  # noqa: E402

import pytest  # noqa: E402
from sqlalchemy import create_engine, event  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from app.config import DEFAULT_PHRASES_PATH, EngineConfig  # noqa: E402
from app.database import Base  # noqa: E402
from app.models import Channel, Client, Flow, FlowOption, FlowStep, Lead  # noqa: E402
from app.services.classifier_service import NO_MATCH, OptionClassifier  # noqa: E402
from app.services.crypto_service import encrypt_secret  # noqa: E402
from app.services.email_service import Notifier  # noqa: E402
from app.services.inbound_service import InboundPipeline  # noqa: E402
from app.services.phrase_service import load_phrase_book  # noqa: E402
from app.services.whatsapp_service import GatewayError, compute_signature  # noqa: E402

PHONE_NUMBER_ID = "PNID-1"
ACCESS_TOKEN = "EAAG-test-token"
APP_SECRET = "meta-app-secret"
WA_USER_ID = "56900000001"


class FakeGateway:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send_text(self, phone_number_id, access_token, to, text):
        if self.fail:
            raise GatewayError("WhatsApp API error: 500 boom")
        self.sent.append({"phone_number_id": phone_number_id, "access_token": access_token, "to": to, "text": text})
        provider_id = f"wamid.out.{len(self.sent)}"
        return provider_id, {"messages": [{"id": provider_id}]}

    @property
    def texts(self):
        return [item["text"] for item in self.sent]


class FakeClassifier(OptionClassifier):
    def __init__(self, result=NO_MATCH):
        self.result = result
        self.calls = []

    def classify(self, text, options, context):
        self.calls.append({"text": text, "codes": [o.option_code for o in options], "context": context})
        return self.result


class FakeNotifier(Notifier):
    def __init__(self, sent=True):
        self.sent = sent
        self.calls = []

    def notify(self, to, subject, body):
        self.calls.append({"to": to, "subject": subject, "body": body})
        return self.sent


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)

    # pysqlite needs explicit BEGIN for SAVEPOINT to behave.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db(engine):
    session = sessionmaker(bind=engine, autoflush=False)()
    yield session
    session.close()


def _option(step, order, code, label, delta=0, **kwargs):
    return FlowOption(
        step_id=step.id,
        option_order=order,
        option_code=code,
        label_text=label,
        score_delta=delta,
        **kwargs,
    )


@pytest.fixture
def tenant(db):
    """Client with one channel and an active three-step flow.

    Step 1: Servicios -> step 2 by order, Ecommerce -> step 3 explicitly, Hablar con un ejecutivo.
    Step 2: Menos de 500 USD -> step 3 by order, Más de 500 USD is terminal.
    Step 3: last step; any choice exhausts the graph.
    """
    client = Client(
        name="Tractiva",
        score_threshold=100,
        human_forward_number="+56911111111",
        notification_email="ventas@tractiva.cl",
    )
    db.add(client)
    db.flush()

    channel = Channel(
        client_id=client.id,
        phone_number_id=PHONE_NUMBER_ID,
        meta_access_token_enc=encrypt_secret(ACCESS_TOKEN),
        meta_app_secret_enc=encrypt_secret(APP_SECRET),
        is_active=True,
    )
    flow = Flow(
        client_id=client.id,
        name="Calificación",
        welcome_message="¡Hola! Soy el asistente de Tractiva.",
        max_reminders=2,
        reminder_delay_minutes=60,
        max_irrelevant_streak=3,
        is_active=True,
    )
    db.add_all([channel, flow])
    db.flush()

    step1 = FlowStep(flow_id=flow.id, step_order=1, prompt_text="¿Qué servicio te interesa?")
    step2 = FlowStep(flow_id=flow.id, step_order=2, prompt_text="¿Cuál es tu presupuesto mensual?")
    step3 = FlowStep(flow_id=flow.id, step_order=3, prompt_text="¿Ya vendes en línea?")
    db.add_all([step1, step2, step3])
    db.flush()

    options = {
        "servicios": _option(step1, 1, "servicios", "Servicios", 10),
        "ecommerce": _option(step1, 2, "ecommerce", "Ecommerce", 20, next_step_id=step3.id),
        "humano": _option(step1, 3, "humano", "Hablar con un ejecutivo", 0, is_contact_human=True),
        "bajo": _option(step2, 1, "bajo", "Menos de 500 USD", 5),
        "alto": _option(step2, 2, "alto", "Más de 500 USD", 40, is_terminal=True),
        "tienda": _option(step3, 1, "tienda", "Ya tengo tienda", 30),
        "sin_tienda": _option(step3, 2, "sin_tienda", "Aún no", 0),
    }
    db.add_all(options.values())
    db.commit()

    return SimpleNamespace(
        client=client,
        channel=channel,
        flow=flow,
        steps=[step1, step2, step3],
        options=options,
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def classifier():
    return FakeClassifier()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
def phrases():
    return load_phrase_book(DEFAULT_PHRASES_PATH)


@pytest.fixture
def engine_config():
    return EngineConfig()


@pytest.fixture
def pipeline(gateway, classifier, notifier, phrases, engine_config):
    return InboundPipeline(gateway, classifier, notifier, phrases, engine_config)


def build_payload(text, message_id, wa_user_id=WA_USER_ID, phone_number_id=PHONE_NUMBER_ID, name="Ana"):
    payload = {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA-1",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"display_phone_number": "56222222222", "phone_number_id": phone_number_id},
                            "contacts": [{"profile": {"name": name}, "wa_id": wa_user_id}],
                            "messages": [
                                {
                                    "from": wa_user_id,
                                    "id": message_id,
                                    "timestamp": "1760000000",
                                    "type": "text",
                                    "text": {"body": text},
                                }
                            ],
                        },
                    }
                ],
            }
        ],
    }
    return json.dumps(payload).encode("utf-8")


@pytest.fixture
def deliver(db, pipeline, tenant):
    """Send a signed text delivery through the pipeline."""
    counter = {"n": 0}

    def _deliver(text, message_id=None, wa_user_id=WA_USER_ID, secret=APP_SECRET, target=None):
        counter["n"] += 1
        raw = build_payload(text, message_id or f"wamid.in.{counter['n']}", wa_user_id=wa_user_id)
        return (target or pipeline).process(db, raw, compute_signature(raw, secret))

    return _deliver


def bump_lead_version(db, wa_user_id=WA_USER_ID):
    """Another worker's update of the same lead, seen as a version change."""
    db.query(Lead).filter(Lead.wa_user_id == wa_user_id).update(
        {Lead.version: Lead.version + 1}, synchronize_session=False
    )
