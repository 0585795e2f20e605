#!/usr/bin/env python3
import os
import sys
from twilio.rest import Client
from dotenv import load_dotenv


def main():
    """Point the Twilio number's voice webhooks at this deployment."""
    print("Loading environment variables...")
    load_dotenv()

    client = Client(
        os.getenv('TWILIO_ACCOUNT_SID'),
        os.getenv('TWILIO_AUTH_TOKEN')
    )

    phone_number = os.getenv('TWILIO_FROM_NUMBER')
    base_url = os.getenv('APP_BASE_URL', '').rstrip('/')
    if not base_url:
        print("Error: APP_BASE_URL environment variable not set")
        sys.exit(1)

    print(f"Updating webhook URLs for {phone_number}")
    print(f"Base URL: {base_url}")

    try:
        numbers = client.incoming_phone_numbers.list(phone_number=phone_number)
        if not numbers:
            print(f"Error: Phone number {phone_number} not found in account")
            sys.exit(1)

        number = numbers[0]

        if '--check' in sys.argv:
            print("\nCurrent webhook configuration:")
            print(f"Voice URL: {number.voice_url}")
            print(f"Voice Method: {number.voice_method}")
            print(f"Status Callback: {number.status_callback}")
            return

        number.update(
            voice_url=f"{base_url}/webhooks/twilio/voice",
            voice_method='POST',
            status_callback=f"{base_url}/webhooks/twilio/status",
            status_callback_method='POST'
        )

        print("✅ Webhook URLs updated successfully")
        print(f"Inbound calls: {base_url}/webhooks/twilio/voice")
        print(f"Status callbacks: {base_url}/webhooks/twilio/status")

    except Exception as e:
        print(f"❌ Error updating webhook URLs: {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
