import paho.mqtt.client as mqtt
import json
import logging
import queue
import threading

import requests

from config.settings import API_BASE_URL, MQTT_BROKER, MQTT_PORT, MQTT_TOPIC_PREFIX, configure_logging

logger = logging.getLogger(__name__)

REGISTRATION_FIELDS = ("sensorId", "building", "floor", "CO2", "PM25", "VOCs")

message_queue = queue.Queue()


def to_registration(payload: dict) -> dict:
    """Keeps only the registration fields, as strings; missing ones become ''."""
    return {field: "" if payload.get(field) is None else str(payload[field]) for field in REGISTRATION_FIELDS}


def forward_reading(payload: dict, api_base_url: str = API_BASE_URL, session=requests) -> dict:
    """
    Posts one reading to the backend. Returns the backend's JSON reply, or an
    error dict when the backend is unreachable or rejects the reading.
    """
    try:
        response = session.post(f"{api_base_url}/readings", json=to_registration(payload), timeout=10)
        response.raise_for_status()
        reply = response.json()
        logger.info(f"Reading from {payload.get('sensorId')} registered")
        for alert in reply.get("alerts", []):
            logger.warning(f"⚠️ {alert['pollutant']} {alert['value']} exceeds {alert['threshold']}")
        return reply
    except requests.exceptions.RequestException as e:
        logger.error(f"Failed to forward reading to backend: {e}")
        return {"status": "error", "message": str(e)}


def on_connect(client, userdata, flags, rc, properties):
    if rc == 0:
        topic = f"{MQTT_TOPIC_PREFIX}/#"
        client.subscribe(topic)
        logger.info(f"Gateway connected and subscribed to {topic}")
    else:
        logger.error(f"Failed to connect to MQTT broker, return code {rc}")


def on_message(client, userdata, msg):
    """Called by the MQTT client thread; only queues the payload."""
    try:
        payload = json.loads(msg.payload.decode())
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        logger.error(f"Error processing MQTT message on {msg.topic}: {e}")
        return
    if not isinstance(payload, dict):
        logger.error(f"Error processing MQTT message on {msg.topic}: expected a JSON object, "
                     f"got {type(payload).__name__}")
        return
    message_queue.put(payload)


def forward_next(api_base_url: str = API_BASE_URL, timeout=None):
    """Forwards one queued payload. A failing item is logged and dropped."""
    payload = message_queue.get(timeout=timeout)
    try:
        return forward_reading(payload, api_base_url)
    except Exception as e:
        logger.error(f"Error forwarding queued reading {payload!r}: {e}")
        return {"status": "error", "message": str(e)}
    finally:
        message_queue.task_done()


def forward_queue_forever(api_base_url: str = API_BASE_URL):
    while True:
        forward_next(api_base_url)


if __name__ == "__main__":
    configure_logging()
    threading.Thread(target=forward_queue_forever, daemon=True).start()

    logger.info(f"Starting MQTT listener, forwarding to {API_BASE_URL}")
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, "airledger_gateway")
    client.on_connect = on_connect
    client.on_message = on_message
    client.connect(MQTT_BROKER, MQTT_PORT, 60)
    client.loop_forever()
