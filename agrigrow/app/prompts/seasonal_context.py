from datetime import date
from typing import Dict, List, Optional

from pydantic import BaseModel

MONTH_NAMES = [
    "January", "February", "March", "April", "May", "June",
    "July", "August", "September", "October", "November", "December",
]


class SeasonalContext(BaseModel):
    month: str
    month_number: int
    season: str
    season_description: str
    typical_activities: List[str]
    common_challenges: List[str]
    weather_pattern: str


# Indian agricultural calendar
_KHARIF = dict(
    season="Kharif",
    season_description="Monsoon/Rainy Season",
    typical_activities=[
        "Sowing of monsoon crops like rice, maize, cotton, soybean",
        "Transplanting of paddy",
        "Weed management in fields",
        "Monitoring for pest and disease outbreaks",
        "Drainage management for waterlogged areas",
    ],
    common_challenges=[
        "Fungal diseases due to high humidity",
        "Root rot from waterlogging",
        "Bacterial and viral diseases",
        "Heavy pest pressure (caterpillars, borers)",
        "Weed competition",
        "Soil erosion from heavy rains",
    ],
    weather_pattern="Monsoon rains with high humidity and warm temperatures (25-35°C)",
)

_RABI = dict(
    season="Rabi",
    season_description="Winter Season",
    typical_activities=[
        "Sowing of wheat, chickpea, mustard, barley",
        "Irrigation scheduling for winter crops",
        "Applying fertilizers for crop growth",
        "Pest monitoring (aphids common)",
        "Preparing for upcoming harvest (late Rabi)",
    ],
    common_challenges=[
        "Frost damage in northern regions",
        "Aphid and whitefly infestations",
        "Powdery mildew in mustard and peas",
        "Nutrient deficiencies (particularly micronutrients)",
        "Fog-related diseases",
        "Irrigation water management",
    ],
    weather_pattern="Cool to cold temperatures (5-25°C) with low humidity and occasional fog",
)

_ZAID = dict(
    season="Zaid",
    season_description="Summer Season",
    typical_activities=[
        "Growing short-duration vegetables",
        "Cucurbit cultivation (cucumber, watermelon, muskmelon)",
        "Fodder crop production",
        "Land preparation for Kharif",
        "Harvesting late Rabi crops",
    ],
    common_challenges=[
        "Heat stress and wilting",
        "Water scarcity and irrigation challenges",
        "Spider mites and thrips attacks",
        "Sunburn on fruits and leaves",
        "High evapotranspiration rates",
        "Fruit cracking due to heat",
    ],
    weather_pattern="Hot and dry conditions (30-45°C) with intense sunlight",
)

STATE_CONTEXT: Dict[str, str] = {
    # North
    "Punjab": "Major wheat and rice producing state. Known for intensive agriculture with good irrigation infrastructure.",
    "Haryana": "Important for wheat, rice, and dairy farming. Part of the Green Revolution belt.",
    "Uttar Pradesh": "Largest agricultural state. Diverse crops including sugarcane, wheat, rice, potatoes.",
    "Rajasthan": "Arid climate, focus on pearl millet (bajra), pulses, oilseeds. Water conservation is critical.",
    "Uttarakhand": "Himalayan state with terrace farming. Organic farming is growing. Fruits and vegetables.",
    "Himachal Pradesh": "Apple orchards, vegetables. High-altitude farming with unique challenges.",
    "Jammu and Kashmir": "Saffron, apples, walnuts. Cold climate agriculture.",
    # East
    "West Bengal": "Major rice producer, jute cultivation. High rainfall areas. Fish farming integrated.",
    "Bihar": "Rice, wheat, maize, vegetables. Flood-prone areas along Ganga.",
    "Odisha": "Rice-based farming, pulses. Cyclone-prone coastal areas.",
    "Jharkhand": "Plateau region with vegetables, rice. Tribal farming practices.",
    # West
    "Maharashtra": "Diverse agriculture - sugarcane, cotton, soybean, grapes. Drip irrigation common.",
    "Gujarat": "Cotton, groundnut, cumin. Good irrigation systems. Dairy farming important.",
    "Goa": "Rice, coconut, cashew. Coastal farming with salinity concerns.",
    # South
    "Karnataka": "Coffee, spices, ragi, rice. Dry land farming in north, plantation crops in south.",
    "Kerala": "Spices (pepper, cardamom), rubber, coconut. High rainfall, plantation farming.",
    "Tamil Nadu": "Rice, sugarcane, bananas. Both irrigated and rain-fed areas.",
    "Andhra Pradesh": "Rice, cotton, chillies, mango. Both coastal and dry regions.",
    "Telangana": "Cotton, rice, turmeric. Tank irrigation traditional.",
    # Central
    "Madhya Pradesh": "Largest producer of pulses and oilseeds. Soybean major crop.",
    "Chhattisgarh": "Rice bowl of India. Forest produce also significant.",
    # Northeast
    "Assam": "Tea, rice, jute. High rainfall, flood management important.",
    "Meghalaya": "Turmeric, ginger, pineapple. Hill farming with jhum (shifting cultivation).",
    "Manipur": "Rice, fruits, vegetables. Valley and hill farming different.",
    "Tripura": "Rice, rubber, bamboo. Small farm holdings.",
    "Nagaland": "Rice, maize, fruits. Terrace farming.",
    "Arunachal Pradesh": "Subtropical to alpine crops. Organic farming focus.",
    "Mizoram": "Jhum cultivation transitioning to settled farming.",
    "Sikkim": "First fully organic state. Cardamom, ginger, oranges.",
}


def get_seasonal_context(today: Optional[date] = None) -> SeasonalContext:
    today = today or date.today()
    month = today.month

    if 6 <= month <= 10:
        season = _KHARIF
    elif month >= 11 or month <= 3:
        season = _RABI
    else:
        season = _ZAID

    return SeasonalContext(
        month=MONTH_NAMES[month - 1], month_number=month, **season
    )


def get_regional_context(state: Optional[str]) -> str:
    if not state:
        return ""
    return STATE_CONTEXT.get(state, f"Farming in {state} region of India.")
