#!/usr/bin/env python3
"""
Script per avviare sia l'API che N worker dei chunk (Redis Stream)
"""
import os
import signal
import subprocess
import sys
import time


def start_workers(count: int):
    """Avvia count worker, ciascuno con CONSUMER_NAME distinto"""
    processes = []
    for idx in range(1, count + 1):
        env = dict(os.environ, CONSUMER_NAME=f"{os.getenv('CONSUMER_NAME', 'worker')}-{idx}")
        print(f"🔄 Avvio worker {env['CONSUMER_NAME']}...")
        processes.append(subprocess.Popen([sys.executable, "consumer.py"], env=env))
    return processes


def main():
    """Avvia worker in background e API in foreground"""
    print("🎯 Avvio XLSX Ingest (API + Worker)")
    workers = start_workers(int(os.getenv("WORKER_COUNT", "2")))

    def stop(sig, frame):
        print("\n🛑 Arresto servizi...")
        for proc in workers:
            proc.terminate()
        sys.exit(0)

    signal.signal(signal.SIGINT, stop)
    signal.signal(signal.SIGTERM, stop)

    # Aspetta un momento per i worker
    time.sleep(2)

    print("🚀 Avvio API...")
    try:
        subprocess.run([sys.executable, "start_processor.py"])
    finally:
        for proc in workers:
            proc.terminate()


if __name__ == "__main__":
    main()
