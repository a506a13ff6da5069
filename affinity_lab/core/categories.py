"""
POI category taxonomy.

Category ids come from the POI catalog table. Labels are used in statistics
and hotspot listings; groups drive the dominant-group of a postal code
profile. A category may appear in more than one group; the first group wins.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Tuple

OTHER_GROUP = "other"


@dataclass(frozen=True)
class CategoryGroup:
    label: str
    categories: Tuple[str, ...]


CATEGORY_LABELS: Dict[str, str] = {
    "clothing_store": "Clothing Stores",
    "department_store": "Department Stores",
    "discount_store": "Discount Stores",
    "shopping_mall": "Shopping Malls",
    "outlet_store": "Outlet Stores",
    "thrift_store": "Thrift Stores",
    "gift_shop": "Gift Shops",
    "convenience_store": "Convenience Stores",
    "general_merchandise_store": "General Merchandise",
    "restaurant": "Restaurants",
    "fast_food_restaurant": "Fast Food",
    "fine_dining": "Fine Dining",
    "cafe": "Cafés",
    "pizza": "Pizza",
    "sushi": "Sushi",
    "bar": "Bars",
    "pub": "Pubs",
    "brewery": "Breweries",
    "winery": "Wineries",
    "coffee_shop": "Coffee Shops",
    "bakery": "Bakeries",
    "juice_bar": "Juice Bars",
    "food_truck": "Food Trucks",
    "car_dealer": "Car Dealers",
    "used_car_dealer": "Used Car Dealers",
    "motorcycle_dealer": "Motorcycle Dealers",
    "gas_station": "Gas Stations",
    "ev_charging_station": "EV Charging",
    "car_wash": "Car Wash",
    "auto_body_shop": "Auto Body Shops",
    "tire_dealer_and_repair": "Tire & Repair",
    "beauty_salon": "Beauty Salons",
    "hair_salon": "Hair Salons",
    "nail_salon": "Nail Salons",
    "barber": "Barbers",
    "spa": "Spas",
    "massage": "Massage",
    "tattoo_and_piercing": "Tattoo & Piercing",
    "skin_care": "Skin Care",
    "tanning_salon": "Tanning Salons",
    "hospital": "Hospitals",
    "clinic": "Clinics",
    "doctor": "Doctors",
    "dentist": "Dentists",
    "pharmacy": "Pharmacies",
    "urgent_care": "Urgent Care",
    "mental_health_service": "Mental Health",
    "physical_therapy": "Physical Therapy",
    "optometrist": "Optometrists",
    "chiropractor": "Chiropractors",
    "veterinarian": "Veterinarians",
    "bank": "Banks",
    "atm": "ATMs",
    "credit_union": "Credit Unions",
    "financial_advisor": "Financial Advisors",
    "insurance_agency": "Insurance Agencies",
    "tax_advisor": "Tax Advisors",
    "investment_company": "Investment Companies",
    "accounting_firm": "Accounting Firms",
    "gym": "Gyms & Fitness",
    "yoga_studio": "Yoga Studios",
    "pilates_studio": "Pilates Studios",
    "swimming_pool": "Swimming Pools",
    "tennis_court": "Tennis Courts",
    "golf_course": "Golf Courses",
    "sports_and_recreation_venue": "Sports Venues",
    "martial_arts_club": "Martial Arts",
    "rock_climbing_gym": "Rock Climbing",
    "cinema": "Cinemas",
    "comedy_club": "Comedy Clubs",
    "music_venue": "Music Venues",
    "casino": "Casinos",
    "arcade": "Arcades",
    "dance_club": "Dance Clubs",
    "karaoke": "Karaoke",
    "stadium_arena": "Stadiums & Arenas",
    "theatre": "Theatres",
    "escape_rooms": "Escape Rooms",
    "hotel": "Hotels",
    "hostel": "Hostels",
    "motel": "Motels",
    "resort": "Resorts",
    "bed_and_breakfast": "Bed & Breakfast",
    "campground": "Campgrounds",
    "rv_park": "RV Parks",
    "holiday_rental_home": "Holiday Rentals",
    "school": "Schools",
    "university": "Universities",
    "college": "Colleges",
    "preschool": "Preschools",
    "tutoring_service": "Tutoring",
    "driving_school": "Driving Schools",
    "language_school": "Language Schools",
    "music_school": "Music Schools",
    "art_school": "Art Schools",
    "jewelry_store": "Jewelry Stores",
    "watch_store": "Watch Stores",
    "designer_clothing": "Designer Clothing",
    "fur_store": "Fur Stores",
    "antique_store": "Antique Stores",
    "wine_bar": "Wine Bars",
    "cocktail_bar": "Cocktail Bars",
    "champagne_bar": "Champagne Bars",
    "medical_spa": "Medical Spas",
    "day_spa": "Day Spas",
    "health_spa": "Health Spas",
    "interior_designer": "Interior Design",
    "furniture_store": "Furniture Stores",
    "home_improvement_store": "Home Improvement",
    "garden_center": "Garden Centers",
    "mattress_store": "Mattress Stores",
    "kitchen_supply_store": "Kitchen Supply",
    "lighting_store": "Lighting Stores",
    "carpet_store": "Carpet Stores",
    "real_estate_agent": "Real Estate Agents",
    "moving_company": "Moving Companies",
    "self_storage": "Self Storage",
    "locksmith": "Locksmiths",
    "electronics_store": "Electronics Stores",
    "mobile_phone_store": "Mobile Phone Stores",
    "computer_store": "Computer Stores",
    "camera_store": "Camera Stores",
    "video_game_store": "Video Game Stores",
    "telecommunications_company": "Telecom Companies",
    "internet_service_provider": "Internet Providers",
    "pet_store": "Pet Stores",
    "pet_grooming": "Pet Grooming",
    "pet_boarding": "Pet Boarding",
    "dog_park": "Dog Parks",
    "pet_adoption": "Pet Adoption",
    "drugstore": "Drugstores",
    "pharmaceutical_company": "Pharma Companies",
    "biotechnology_company": "Biotech Companies",
    "bus_station": "Bus Stations",
    "train_station": "Train Stations",
    "airport": "Airports",
    "taxi_stand": "Taxi Stands",
    "ferry_terminal": "Ferry Terminals",
    "subway_station": "Subway Stations",
    "parking": "Parking",
    "bike_rental": "Bike Rentals",
    "car_rental": "Car Rentals",
    "ride_hailing_service": "Ride Hailing",
    "metro_station": "Metro Stations",
    "freight_and_cargo_service": "Freight & Cargo",
    "warehouse": "Warehouses",
    "distribution_service": "Distribution",
    "motor_freight_trucking": "Freight Trucking",
    "courier_service": "Courier Services",
    "postal_service": "Postal Services",
    "government_office": "Government Offices",
    "city_hall": "City Halls",
    "courthouse": "Courthouses",
    "embassy": "Embassies",
    "consulate": "Consulates",
    "fire_station": "Fire Stations",
    "police_station": "Police Stations",
    "post_office": "Post Offices",
    "library": "Libraries",
    "community_center": "Community Centers",
    "energy_equipment_and_solution": "Energy Equipment",
    "pipeline_transportation": "Pipelines",
    "electric_utility_provider": "Electric Utilities",
    "water_utility_company": "Water Utilities",
    "gas_company": "Gas Companies",
    "esports_league": "Esports Leagues",
    "esports_team": "Esports Teams",
    "virtual_reality_center": "VR Centers",
    "internet_cafe": "Internet Cafés",
    "drive_in_theater": "Drive-in Theaters",
    "outdoor_movies": "Outdoor Movies",
    "film_festival": "Film Festivals",
    "coworking_space": "Coworking Spaces",
    "information_technology_company": "IT Companies",
    "management_consultant": "Management Consulting",
    "legal_services": "Legal Services",
    "executive_search": "Executive Search",
    "business_consultant": "Business Consulting",
    "venture_capital": "Venture Capital",
    "private_equity": "Private Equity",
    "museum": "Museums",
    "aquarium": "Aquariums",
    "zoo": "Zoos",
    "botanical_garden": "Botanical Gardens",
    "national_park": "National Parks",
    "beach": "Beaches",
    "landmark_and_historical_building": "Landmarks & Historical",
    "castle": "Castles",
    "monument": "Monuments",
    "hot_springs": "Hot Springs",
    "ski_area": "Ski Areas",
    "supermarket": "Supermarkets",
    "park": "Parks",
    "amusement_park": "Amusement Parks",
    "bowling_alley": "Bowling Alleys",
}

POI_CATEGORIES: Tuple[str, ...] = tuple(CATEGORY_LABELS)

# Insertion order matters: category_group returns the first match
CATEGORY_GROUPS: Dict[str, CategoryGroup] = {
    "retail": CategoryGroup(
        label="Retail & Shopping",
        categories=(
            "clothing_store", "department_store", "discount_store", "shopping_mall",
            "outlet_store", "thrift_store", "gift_shop", "convenience_store",
            "general_merchandise_store", "supermarket",
        ),
    ),
    "food_and_beverage": CategoryGroup(
        label="Food & Beverage",
        categories=(
            "restaurant", "fast_food_restaurant", "fine_dining", "cafe", "pizza",
            "sushi", "bar", "pub", "brewery", "winery", "coffee_shop", "bakery",
            "juice_bar", "food_truck",
        ),
    ),
    "automotive": CategoryGroup(
        label="Automotive",
        categories=(
            "car_dealer", "used_car_dealer", "motorcycle_dealer", "gas_station",
            "ev_charging_station", "car_wash", "auto_body_shop",
            "tire_dealer_and_repair",
        ),
    ),
    "beauty": CategoryGroup(
        label="Beauty & Personal Care",
        categories=(
            "beauty_salon", "hair_salon", "nail_salon", "barber", "spa", "massage",
            "tattoo_and_piercing", "skin_care", "tanning_salon",
        ),
    ),
    "healthcare": CategoryGroup(
        label="Healthcare",
        categories=(
            "hospital", "clinic", "doctor", "dentist", "pharmacy", "urgent_care",
            "mental_health_service", "physical_therapy", "optometrist", "chiropractor",
            "veterinarian",
        ),
    ),
    "finance": CategoryGroup(
        label="Financial Services",
        categories=(
            "bank", "atm", "credit_union", "financial_advisor", "insurance_agency",
            "tax_advisor", "investment_company", "accounting_firm",
        ),
    ),
    "sports": CategoryGroup(
        label="Sports & Fitness",
        categories=(
            "gym", "yoga_studio", "pilates_studio", "swimming_pool", "tennis_court",
            "golf_course", "sports_and_recreation_venue", "martial_arts_club",
            "rock_climbing_gym",
        ),
    ),
    "entertainment": CategoryGroup(
        label="Entertainment",
        categories=(
            "cinema", "comedy_club", "music_venue", "casino", "arcade", "dance_club",
            "karaoke", "stadium_arena", "theatre", "escape_rooms", "bowling_alley",
            "amusement_park",
        ),
    ),
    "accommodation": CategoryGroup(
        label="Accommodation",
        categories=(
            "hotel", "hostel", "motel", "resort", "bed_and_breakfast", "campground",
            "rv_park", "holiday_rental_home",
        ),
    ),
    "education": CategoryGroup(
        label="Education",
        categories=(
            "school", "university", "college", "preschool", "tutoring_service",
            "driving_school", "language_school", "music_school", "art_school",
        ),
    ),
    "luxury": CategoryGroup(
        label="Luxury",
        categories=(
            "jewelry_store", "watch_store", "designer_clothing", "fur_store",
            "antique_store", "wine_bar", "cocktail_bar", "champagne_bar", "medical_spa",
            "day_spa", "health_spa",
        ),
    ),
    "home": CategoryGroup(
        label="Home & Living",
        categories=(
            "interior_designer", "furniture_store", "home_improvement_store",
            "garden_center", "mattress_store", "kitchen_supply_store", "lighting_store",
            "carpet_store", "real_estate_agent", "moving_company", "self_storage",
            "locksmith",
        ),
    ),
    "electronics": CategoryGroup(
        label="Electronics & Telco",
        categories=(
            "electronics_store", "mobile_phone_store", "computer_store", "camera_store",
            "video_game_store", "telecommunications_company",
            "internet_service_provider",
        ),
    ),
    "pets": CategoryGroup(
        label="Pet Care",
        categories=(
            "pet_store", "pet_grooming", "pet_boarding", "dog_park", "pet_adoption",
            "veterinarian",
        ),
    ),
    "pharma": CategoryGroup(
        label="Pharmaceutical",
        categories=(
            "drugstore", "pharmaceutical_company", "biotechnology_company",
        ),
    ),
    "transport": CategoryGroup(
        label="Transport",
        categories=(
            "bus_station", "train_station", "airport", "taxi_stand", "ferry_terminal",
            "subway_station", "parking", "bike_rental", "car_rental",
            "ride_hailing_service", "metro_station",
        ),
    ),
    "logistics": CategoryGroup(
        label="Logistics & Delivery",
        categories=(
            "freight_and_cargo_service", "warehouse", "distribution_service",
            "motor_freight_trucking", "courier_service", "postal_service",
        ),
    ),
    "government": CategoryGroup(
        label="Government & Public",
        categories=(
            "government_office", "city_hall", "courthouse", "embassy", "consulate",
            "fire_station", "police_station", "post_office", "library",
            "community_center",
        ),
    ),
    "energy": CategoryGroup(
        label="Energy & Utilities",
        categories=(
            "energy_equipment_and_solution", "pipeline_transportation",
            "electric_utility_provider", "water_utility_company", "gas_company",
        ),
    ),
    "gaming": CategoryGroup(
        label="Gaming",
        categories=(
            "arcade", "esports_league", "esports_team", "virtual_reality_center",
            "internet_cafe", "video_game_store",
        ),
    ),
    "moviegoers": CategoryGroup(
        label="Moviegoers",
        categories=(
            "cinema", "drive_in_theater", "outdoor_movies", "film_festival",
        ),
    ),
    "corporate": CategoryGroup(
        label="Corporate / C-Level",
        categories=(
            "coworking_space", "information_technology_company",
            "management_consultant", "legal_services", "executive_search",
            "business_consultant", "venture_capital", "private_equity",
        ),
    ),
    "attractions": CategoryGroup(
        label="Attractions & Activities",
        categories=(
            "museum", "aquarium", "zoo", "botanical_garden", "national_park", "beach",
            "landmark_and_historical_building", "castle", "monument", "hot_springs",
            "ski_area", "park",
        ),
    ),
}

_GROUP_BY_CATEGORY: Dict[str, str] = {}
for _group_id, _group in CATEGORY_GROUPS.items():
    for _cat in _group.categories:
        _GROUP_BY_CATEGORY.setdefault(_cat, _group_id)


def category_group(category: str) -> str:
    """Return the first group containing the category, else 'other'."""
    return _GROUP_BY_CATEGORY.get(category, OTHER_GROUP)


def category_label(category: str) -> str:
    """Human label for a category; unknown ids are title-cased."""
    return CATEGORY_LABELS.get(category) or category.replace("_", " ").title()


def unknown_categories(categories: Iterable[str]) -> List[str]:
    """Categories not present in the POI taxonomy, sorted."""
    return sorted(set(categories) - set(CATEGORY_LABELS))
