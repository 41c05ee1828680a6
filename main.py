import json
import os
import sys
import time

from promotion_engine import PromotionEngine, PromotionEngineError
from promotion_engine.config import get_config, update_config


def load_requests(input_file):
    """Read one request payload per non-empty line"""
    requests = []
    with open(input_file, 'r', encoding='utf-8') as f:
        for line_number, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                requests.append(json.loads(line))
            except json.JSONDecodeError as e:
                print(f"Skipping line {line_number}: {e}")
    return requests


def main():
    input_file = sys.argv[1] if len(sys.argv) > 1 else r"input/requests.jsonl"
    output_file = sys.argv[2] if len(sys.argv) > 2 else r"output/summary.csv"
    if len(sys.argv) > 3:
        update_config(campaigns_dir=sys.argv[3])

    # Check if input file exists
    if not os.path.exists(input_file):
        print(f"Error: Input file '{input_file}' not found.")
        return

    print(f"Loading requests from {input_file}...")
    start_time = time.time()
    try:
        requests = load_requests(input_file)
        print(f"Loaded {len(requests)} requests.")
    except OSError as e:
        print(f"Error reading requests: {e}")
        return

    # Initialize Promotion Engine
    print("Initializing Promotion Engine...")
    try:
        engine = PromotionEngine(config=get_config())
    except PromotionEngineError as e:
        print(f"Error initializing engine: {e}")
        return

    # Preview every request
    print("Evaluating requests...")
    try:
        processing_start = time.time()
        result_df = engine.evaluate_batch(requests)
        processing_time = time.time() - processing_start
        print(f"Processing complete in {processing_time:.2f} seconds.")
        print(f"Output contains {len(result_df)} rows.")
    except PromotionEngineError as e:
        print(f"Error during processing: {e}")
        return

    # Save Output
    print(f"Saving output to {output_file}...")
    try:
        os.makedirs(os.path.dirname(output_file) or ".", exist_ok=True)
        result_df.to_csv(output_file, index=False)
        print("Successfully saved output CSV.")
    except OSError as e:
        print(f"Error saving output: {e}")

    total_time = time.time() - start_time
    print(f"Total execution time: {total_time:.2f} seconds.")


if __name__ == "__main__":
    main()
