"""Greenhouse device simulator.

Behaves like a field sensor/relay board:
1. Posts temperature/humidity/battery readings to the HTTP API on an interval.
2. Re-sends each reading once to show the API's duplicate handling (200 + same id).
3. Subscribes to its control topic and switches a simulated relay on ON/OFF.

Requires: paho-mqtt, requests
Run: python sim_device.py
"""

import json, os, random, sys, threading, time
from datetime import datetime, timezone

import requests
from paho.mqtt import client as mqtt

# --- CONFIG ---
BROKER_HOST = os.getenv('MQTT__HOST', 'localhost')
BROKER_PORT = int(os.getenv('MQTT__PORT', '1883'))
NAMESPACE = os.getenv('MQTT__NAMESPACE', 'greenhouse')
API_BASE = os.getenv('API_BASE_URL', 'http://localhost:8000/api')
DEVICE_ID = os.getenv('SIM_DEVICE_ID', 'greenhouse-01')
READING_INTERVAL = 5             # seconds
RESEND_DUPLICATES = True

RELAY_ON = False
STOP = False
battery = 100.0


def control_topic():
    return f'{NAMESPACE}/control/{DEVICE_ID}'


# --- HTTP ---
def post_reading(body):
    url = API_BASE + '/sensors/sensor-data'
    try:
        r = requests.post(url, json=body, timeout=5)
    except requests.RequestException as e:
        print('[HTTP] POST error', e)
        return None
    if r.status_code not in (200, 201):
        print(f'[HTTP] rejected {r.status_code}', r.text)
        return None
    return r.status_code, r.json()


def build_reading():
    global battery
    battery = max(0.0, battery - random.uniform(0.0, 0.2))
    base_temp = 27.0 if RELAY_ON else 24.0
    return {
        'device_id': DEVICE_ID,
        'timestamp': datetime.now(timezone.utc).isoformat(timespec='seconds').replace('+00:00', 'Z'),
        'temperature': round(base_temp + random.uniform(-1.5, 1.5), 2),
        'humidity': round(random.uniform(45, 75), 1),
        'battery': round(battery, 1),
    }


def send_reading():
    body = build_reading()
    result = post_reading(body)
    if not result:
        return
    status, payload = result
    print(f'[TEL] {status} id={payload.get("id")} temp={body["temperature"]} hum={body["humidity"]}')
    if RESEND_DUPLICATES:
        again = post_reading(body)
        if again:
            dup_status, dup_payload = again
            same = dup_payload.get('id') == payload.get('id')
            print(f'[TEL] resend -> {dup_status} same_id={same}')


# --- MQTT ---
client = mqtt.Client(client_id=f'sim-{DEVICE_ID}-{random.randint(1000, 9999)}')


def handle_command(cmd):
    global RELAY_ON
    if cmd == 'ON':
        RELAY_ON = True
    elif cmd == 'OFF':
        RELAY_ON = False
    else:
        print('[CMD] unknown command', cmd)
        return
    print(f'[CMD] relay {"ON" if RELAY_ON else "OFF"}')


def on_connect(c, userdata, flags, rc):
    if rc == 0:
        print('[MQTT] connected')
        c.subscribe(control_topic(), qos=1)
        print('[MQTT] subscribed', control_topic())
    else:
        print('[MQTT] connect failed rc', rc)


def on_message(c, userdata, msg):
    try:
        body = json.loads(msg.payload.decode())
    except ValueError:
        print('[MQTT] ignoring non-JSON payload on', msg.topic)
        return
    print(f'[MQTT] {msg.topic} -> {body}')
    if not isinstance(body, dict):
        return
    handle_command(body.get('command'))


client.on_connect = on_connect
client.on_message = on_message


def mqtt_connect_loop():
    while not STOP:
        try:
            client.connect(BROKER_HOST, BROKER_PORT, 60)
            client.loop_start()
            break
        except OSError as e:
            print('[MQTT] connect error, retrying in 3s', e)
            time.sleep(3)


def telemetry_loop():
    while not STOP:
        send_reading()
        time.sleep(READING_INTERVAL)


def main():
    global STOP
    mqtt_connect_loop()
    threading.Thread(target=telemetry_loop, daemon=True).start()
    print(f'[MAIN] simulating {DEVICE_ID}. Press Ctrl+C to stop.')
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        print('[MAIN] stopping...')
    finally:
        STOP = True
        client.loop_stop()
        client.disconnect()


if __name__ == '__main__':
    sys.exit(main())
