import paho.mqtt.client as mqtt
import json
import time
import random
import logging
from typing import Optional, Tuple

from config.settings import MQTT_BROKER, MQTT_PORT, MQTT_TOPIC_PREFIX, REGISTER_INTERVAL_SECONDS, configure_logging
from ledger_services.schemas import UNIT_CO2, UNIT_PM25, UNIT_VOCS, Measurement, Reading

logger = logging.getLogger(__name__)

# Sensor ids installed on each floor of each building
SENSOR_LAYOUT = {
    "Building_1": {
        "1st floor": ["M01", "M02", "M03"],
        "2nd floor": ["M04", "M05", "M06"],
        "3rd floor": ["M07", "M08"],
        "4th floor": ["X09", "X10", "X11"],
    },
    "Building_2": {
        "1st floor": ["Y01", "Y02", "Y03"],
        "2nd floor": ["Y04", "Y05", "Y06"],
        "3rd floor": ["Y07", "Y08", "Y09"],
    },
    "Building_3": {
        "1st floor": ["U01", "U02", "U03"],
        "2nd floor": ["U04", "U05", "U06"],
    },
    "Building_4": {
        "1st floor": ["P01", "P02", "P03"],
        "2nd floor": ["P04", "P05", "P06"],
        "3rd floor": ["P07", "P08", "P09"],
    },
}


class SimulatedReadingGenerator:
    """
    Deterministic stand-in for real sensors. The same seed always yields the
    same sensor choice and values, so a replayed transaction reproduces its reading.
    """

    def __init__(self, seed: Optional[int] = None):
        self.random = random.Random(seed)

    def _in_range(self, low: int, high: int) -> int:
        return self.random.randint(low, high)

    def choose_sensor(self) -> Tuple[str, str, str]:
        building = self.random.choice(list(SENSOR_LAYOUT))
        floor = self.random.choice(list(SENSOR_LAYOUT[building]))
        sensor_id = self.random.choice(SENSOR_LAYOUT[building][floor])
        return sensor_id, building, floor

    def payload(self) -> dict:
        """Registration arguments for one simulated reading, all as strings."""
        sensor_id, building, floor = self.choose_sensor()
        return {
            "sensorId": sensor_id,
            "building": building,
            "floor": floor,
            "CO2": str(self._in_range(300, 1000)),          # ppm
            "PM25": str(round(self.random.random() * 50, 2)),  # ug/m3
            "VOCs": str(self._in_range(0, 1000)),           # ppb
        }

    def generate(self, timestamp: str) -> Reading:
        values = self.payload()
        return Reading(
            timestamp=timestamp,
            sensorId=values["sensorId"],
            location=f"{values['building']}, {values['floor']}",
            CO2=Measurement(value=int(values["CO2"]), unit=UNIT_CO2),
            PM25=Measurement(value=float(values["PM25"]), unit=UNIT_PM25),
            VOCs=Measurement(value=int(values["VOCs"]), unit=UNIT_VOCS),
        )


def run_simulator(interval: float = REGISTER_INTERVAL_SECONDS):
    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2, "airledger_sensor_simulator")
    client.connect(MQTT_BROKER, MQTT_PORT, 60)
    client.loop_start()

    generator = SimulatedReadingGenerator()
    try:
        while True:
            payload = generator.payload()
            topic = f"{MQTT_TOPIC_PREFIX}/{payload['sensorId']}"
            client.publish(topic, json.dumps(payload))
            logger.info(f"Sensor {payload['sensorId']} published simulated data to {topic}")
            time.sleep(random.uniform(0.8 * interval, 1.2 * interval))
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    configure_logging()
    run_simulator()
